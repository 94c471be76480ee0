import torch
import numpy as np
import cv2
from typing import List, Tuple, Sequence

try:
    from .raster_utils import *
    from .diffusion_inpaint import binarize_mask
except ImportError:
    from raster_utils import *
    from diffusion_inpaint import binarize_mask

Point = Tuple[float, float]


def _mask_from_alpha(alpha: np.ndarray) -> np.ndarray:
    H, W = alpha.shape
    raster = np.zeros((H, W, 4), dtype=np.uint8)
    raster[alpha > 0, :3] = MASK_STROKE_RGB
    raster[..., ALPHA_CHANNEL] = alpha
    return raster


def empty_mask(width: int, height: int) -> np.ndarray:
    return np.zeros((height, width, 4), dtype=np.uint8)


def corner_watermark_mask(width: int, height: int,
                          size_fraction: float = 0.15,
                          min_size: int = 60,
                          margin: int = 10) -> np.ndarray:
    """Square mask in the bottom-right corner, where stock watermarks usually sit."""
    if width <= 0 or height <= 0:
        raise InpaintInputError(f"Mask size must be positive, got {width}x{height}")
    size = int(round(max(min_size, min(width, height) * size_fraction)))
    x0 = max(0, width - size - margin)
    y0 = max(0, height - size - margin)
    x1 = min(width, x0 + size)
    y1 = min(height, y0 + size)

    alpha = np.zeros((height, width), dtype=np.uint8)
    alpha[y0:y1, x0:x1] = MASK_STROKE_ALPHA
    return _mask_from_alpha(alpha)


def stroke_mask(width: int, height: int,
                strokes: Sequence[Sequence[Point]],
                brush_size: int = 20) -> np.ndarray:
    """
    Rasterize brush strokes into a mask raster.

    Args:
        strokes: list of strokes, each a list of (x, y) points in pixel coordinates
        brush_size: stroke width in pixels; caps and joins are round
    """
    if brush_size < 1:
        raise InpaintInputError(f"brush_size must be >= 1, got {brush_size}")
    alpha = np.zeros((height, width), dtype=np.uint8)
    radius = max(1, int(round(brush_size / 2)))
    for stroke in strokes:
        points = np.round(np.asarray(stroke, dtype=np.float32)).astype(np.int32).reshape(-1, 2)
        if len(points) == 0:
            continue
        if len(points) == 1:
            cv2.circle(alpha, (int(points[0, 0]), int(points[0, 1])), radius, MASK_STROKE_ALPHA, thickness=-1)
        else:
            cv2.polylines(alpha, [points.reshape(-1, 1, 2)], isClosed=False, color=MASK_STROKE_ALPHA, thickness=int(brush_size))
    return _mask_from_alpha(alpha)


def combine_masks(*masks: np.ndarray) -> np.ndarray:
    """Union of mask rasters: per-pixel maximum of the alpha channel."""
    if not masks:
        raise InpaintInputError("combine_masks needs at least one mask")
    rasters = [validate_raster(m, "mask") for m in masks]
    for m in rasters[1:]:
        check_same_size(rasters[0], m)
    alpha = np.max(np.stack([m[..., ALPHA_CHANNEL] for m in rasters]), axis=0)
    return _mask_from_alpha(alpha)


# ────────────────────────────────────────────────────────────────────────────────
#  COMFYUI NODES
# ────────────────────────────────────────────────────────────────────────────────

class Eden_CornerWatermarkMask:
    @classmethod
    def INPUT_TYPES(s):
        return {
            "required": {
                "width": ("INT", {"default": 1024, "min": 1, "max": 16384}),
                "height": ("INT", {"default": 1024, "min": 1, "max": 16384}),
                "size_fraction": ("FLOAT", {"default": 0.15, "min": 0.0, "max": 1.0, "step": 0.01}),
                "min_size": ("INT", {"default": 60, "min": 1, "max": 4096}),
                "margin": ("INT", {"default": 10, "min": 0, "max": 4096}),
            },
            "optional": {
                "image_optional": ("IMAGE",),
            }
        }
    RETURN_TYPES = ("MASK",)
    FUNCTION = "execute"
    CATEGORY = "Eden 🌱/inpaint"

    def execute(self, width, height, size_fraction, min_size, margin, image_optional=None):
        # the image size wins over the widgets when an image is connected
        if image_optional is not None:
            height, width = image_optional.shape[1], image_optional.shape[2]
        mask = corner_watermark_mask(width, height, size_fraction, min_size, margin)
        # masks are painted semi-transparent; report them as full strength for ComfyUI
        strength = (mask[..., ALPHA_CHANNEL] > 0).astype(np.float32)
        return (torch.from_numpy(strength).unsqueeze(0),)


class Eden_MaskFillInfo:
    @classmethod
    def INPUT_TYPES(s):
        return {
            "required": {
                "mask": ("MASK",),
                "threshold": ("INT", {"default": 50, "min": 0, "max": 255}),
                "padding": ("INT", {"default": 2, "min": 0, "max": 4096}),
            }
        }
    RETURN_TYPES = ("INT", "INT", "INT", "INT", "INT")
    RETURN_NAMES = ("x", "y", "width", "height", "pixels_to_fill")
    FUNCTION = "execute"
    CATEGORY = "Eden 🌱/inpaint"

    def execute(self, mask, threshold, padding):
        if mask.dim() == 3:
            mask = mask[0]
        info = binarize_mask(comfy_mask_to_raster(mask), threshold=threshold, padding=padding)
        if info.bbox is None:
            # If nothing is marked, report the entire mask
            H, W = info.fill_grid.shape
            return (0, 0, W, H, 0)
        min_x, min_y, max_x, max_y = info.bbox
        return (min_x, min_y, max_x - min_x + 1, max_y - min_y + 1, info.pixels_to_fill)
