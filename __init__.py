import os
import sys
sys.path.insert(0, os.path.abspath(os.path.dirname(__file__)))

from inpaint_utils.diffusion_inpaint import Eden_DiffusionInpaint
from inpaint_utils.mask_presets import Eden_CornerWatermarkMask, Eden_MaskFillInfo

NODE_CLASS_MAPPINGS = {
    "Eden_DiffusionInpaint": Eden_DiffusionInpaint,
    "Eden_CornerWatermarkMask": Eden_CornerWatermarkMask,
    "Eden_MaskFillInfo": Eden_MaskFillInfo,
}

NODE_DISPLAY_NAME_MAPPINGS = {
    "Eden_DiffusionInpaint": "Diffusion Inpaint (local, no model) 🩹",
    "Eden_CornerWatermarkMask": "Corner Watermark Mask",
    "Eden_MaskFillInfo": "Mask Fill Info",
}


def print_eden_banner():
    """
    Prints a decorative banner for the Eden inpaint pack on load
    """

    green = "\033[32m"
    reset = "\033[0m"
    bold = "\033[1m"

    banner = f"""
    {green}🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱{reset}
    {bold}🌱 Eden Diffusion Inpaint maintained by {green}https://eden.art/  🌱{reset}
    {green}🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱🌱{reset}
    """
    print(banner)

# Call this function when your package loads
print_eden_banner()
