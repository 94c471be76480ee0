import os
import torch
import numpy as np
from PIL import Image
import matplotlib.pyplot as plt
from typing import List, Tuple, Optional, Sequence

# ────────────────────────────────────────────────────────────────────────────────
#  CONSTANTS & ERRORS
# ────────────────────────────────────────────────────────────────────────────────

MAX_VALUE_8_BIT = 255
ALPHA_CHANNEL = 3

# (dx, dy) for the 8-connected neighbourhood: cardinals first, then diagonals
NEIGHBOR_OFFSETS: Tuple[Tuple[int, int], ...] = (
    (-1, 0), (1, 0), (0, -1), (0, 1),
    (-1, -1), (1, -1), (-1, 1), (1, 1),
)

# Brush color the editor paints masks with: rgba(255, 50, 50, 0.5)
MASK_STROKE_RGB = (255, 50, 50)
MASK_STROKE_ALPHA = 128

BBox = Tuple[int, int, int, int]  # (min_x, min_y, max_x, max_y), inclusive


class InpaintInputError(ValueError):
    """Raised for malformed rasters or out of range inpaint settings."""


# ────────────────────────────────────────────────────────────────────────────────
#  RASTER UTILITIES
# ────────────────────────────────────────────────────────────────────────────────

def validate_raster(raster: np.ndarray, name: str = "raster") -> np.ndarray:
    """Check that `raster` is an [H,W,4] array of 0-255 values and return it as uint8."""
    if not isinstance(raster, np.ndarray):
        raise InpaintInputError(f"{name} must be a numpy array, got {type(raster).__name__}")
    if raster.ndim != 3 or raster.shape[-1] != 4:
        raise InpaintInputError(f"Expected {name} with shape [H, W, 4], got {raster.shape}")
    if raster.shape[0] == 0 or raster.shape[1] == 0:
        raise InpaintInputError(f"{name} must not be empty, got {raster.shape}")
    if raster.dtype == np.uint8:
        return raster
    if raster.dtype == bool or not np.issubdtype(raster.dtype, np.number):
        raise InpaintInputError(f"{name} must hold numeric channel values, got dtype {raster.dtype}")
    if raster.min() < 0 or raster.max() > MAX_VALUE_8_BIT:
        raise InpaintInputError(f"{name} channel values must lie in [0, 255]")
    return np.rint(raster).astype(np.uint8)


def as_rgba_raster(pixels: np.ndarray) -> np.ndarray:
    """Promote an [H,W], [H,W,3] or [H,W,4] uint8 array to an RGBA raster (opaque alpha when missing)."""
    if pixels.ndim == 2:
        pixels = np.repeat(pixels[:, :, np.newaxis], 3, axis=2)
    if pixels.ndim == 3 and pixels.shape[-1] == 3:
        alpha = np.full(pixels.shape[:2] + (1,), MAX_VALUE_8_BIT, dtype=pixels.dtype)
        pixels = np.concatenate([pixels, alpha], axis=-1)
    return validate_raster(pixels)


def check_same_size(image: np.ndarray, mask: np.ndarray) -> None:
    if image.shape[:2] != mask.shape[:2]:
        raise InpaintInputError(
            f"Mask and image dimensions differ: image {image.shape[1]}x{image.shape[0]}, "
            f"mask {mask.shape[1]}x{mask.shape[0]}"
        )


def clamp_bbox(bbox: BBox, width: int, height: int) -> BBox:
    min_x, min_y, max_x, max_y = bbox
    return (max(0, min_x), max(0, min_y), min(width - 1, max_x), min(height - 1, max_y))


def pad_bbox(bbox: BBox, padding: int, width: int, height: int) -> BBox:
    """Grow `bbox` by `padding` pixels on every side, clamped to the raster."""
    min_x, min_y, max_x, max_y = bbox
    return clamp_bbox((min_x - padding, min_y - padding, max_x + padding, max_y + padding), width, height)


def bbox_slices(bbox: BBox) -> Tuple[slice, slice]:
    """Row / column slices covering an inclusive bbox."""
    min_x, min_y, max_x, max_y = bbox
    return slice(min_y, max_y + 1), slice(min_x, max_x + 1)


# ────────────────────────────────────────────────────────────────────────────────
#  COMFYUI / PIL BRIDGES
# ────────────────────────────────────────────────────────────────────────────────

def comfy_image_to_raster(image_hwc: torch.Tensor) -> np.ndarray:
    """Convert a single ComfyUI image [H,W,C] (float 0-1, C in 1/3/4) to an RGBA uint8 raster."""
    if image_hwc.dim() != 3:
        raise InpaintInputError(f"Expected image with shape [H, W, C], got {tuple(image_hwc.shape)}")
    pixels = image_hwc.detach().cpu().float().clamp(0, 1).numpy()
    pixels = np.rint(pixels * MAX_VALUE_8_BIT).astype(np.uint8)
    channels = pixels.shape[-1]
    if channels == 1:
        pixels = pixels[..., 0]
    elif channels not in (3, 4):
        raise InpaintInputError(f"Input image must have 1, 3 or 4 channels, got {channels}")
    return as_rgba_raster(pixels)


def comfy_mask_to_raster(mask_hw: torch.Tensor) -> np.ndarray:
    """Convert a ComfyUI mask [H,W] (float 0-1) to an RGBA mask raster, mask strength in alpha."""
    if mask_hw.dim() != 2:
        raise InpaintInputError(f"Expected mask with shape [H, W], got {tuple(mask_hw.shape)}")
    strength = mask_hw.detach().cpu().float().clamp(0, 1).numpy()
    H, W = strength.shape
    raster = np.zeros((H, W, 4), dtype=np.uint8)
    raster[..., :3] = MASK_STROKE_RGB
    raster[..., ALPHA_CHANNEL] = np.rint(strength * MAX_VALUE_8_BIT).astype(np.uint8)
    return raster


def raster_to_comfy_image(raster: np.ndarray, channels: int = 3) -> torch.Tensor:
    """Convert an RGBA raster back to a ComfyUI image [H,W,C] float 0-1 keeping `channels` channels."""
    pixels = raster[..., :channels] if channels in (3, 4) else raster[..., :1]
    return torch.from_numpy(pixels.astype(np.float32) / MAX_VALUE_8_BIT)


def fill_grid_to_comfy_mask(fill_grid: np.ndarray) -> torch.Tensor:
    """Boolean [H,W] grid -> ComfyUI mask [H,W] float 0/1."""
    return torch.from_numpy(fill_grid.astype(np.float32))


def pil_to_raster(pil_image: Image.Image) -> np.ndarray:
    return validate_raster(np.array(pil_image.convert("RGBA")))


def raster_to_pil(raster: np.ndarray) -> Image.Image:
    return Image.fromarray(validate_raster(raster))


# ────────────────────────────────────────────────────────────────────────────────
#  VISUALIZATION (for testing/debugging)
# ────────────────────────────────────────────────────────────────────────────────

def overlay_fill_grid(raster: np.ndarray, fill_grid: np.ndarray, alpha: float = 0.4) -> np.ndarray:
    """RGB uint8 copy of `raster` with pixels still pending fill tinted red."""
    rgb = raster[..., :3].astype(np.float32)
    tint = np.zeros_like(rgb)
    tint[..., 0] = MAX_VALUE_8_BIT
    weight = fill_grid.astype(np.float32)[..., np.newaxis] * alpha
    blended = rgb * (1 - weight) + tint * weight
    return np.clip(np.rint(blended), 0, MAX_VALUE_8_BIT).astype(np.uint8)


def save_frames_as_gif(frames: Sequence[np.ndarray], output_path: str, duration: int = 100) -> bool:
    """Save a sequence of [H,W,3] uint8 frames as an animated gif."""
    frames_pil = [Image.fromarray(f) for f in frames]
    if not frames_pil:
        print(f"Warning: No frames provided to save_frames_as_gif for {output_path}")
        return False
    try:
        frames_pil[0].save(
            output_path,
            save_all=True,
            append_images=frames_pil[1:],
            optimize=True,
            duration=duration,
            loop=0
        )
        print(f"- Fill process animation: {os.path.basename(output_path)}")
        return True
    except (OSError, ValueError) as e:
        print(f"Error saving GIF {output_path}: {e}")
        return False


def visualize_inpaint_result(output_dir: str, test_name: str,
                             original: np.ndarray,
                             mask: np.ndarray,
                             result: np.ndarray,
                             remaining: Optional[np.ndarray] = None) -> Optional[str]:
    """Save a side-by-side of the original raster, the mask alpha and the inpainted raster."""
    os.makedirs(output_dir, exist_ok=True)
    output_path = os.path.join(output_dir, f"{test_name}_result_visualization.png")

    panels: List[Tuple[np.ndarray, str, Optional[str]]] = [
        (original[..., :3], "Original Image", None),
        (mask[..., ALPHA_CHANNEL], "Mask (alpha)", "gray"),
        (result[..., :3], "Inpainted", None),
    ]
    if remaining is not None and remaining.any():
        panels.append((remaining.astype(np.uint8) * MAX_VALUE_8_BIT, "Unfilled", "gray"))

    fig, axes = plt.subplots(1, len(panels), figsize=(5 * len(panels), 5))
    for ax, (img, title, cmap) in zip(axes, panels):
        ax.imshow(img, cmap=cmap, vmin=0, vmax=MAX_VALUE_8_BIT)
        ax.set_title(title)
        ax.axis('off')

    plt.tight_layout()
    try:
        plt.savefig(output_path)
        print(f"- Result visualization: {os.path.basename(output_path)}")
    except (OSError, ValueError) as e:
        print(f"Error saving result visualization {output_path}: {e}")
        output_path = None
    finally:
        plt.close(fig)
    return output_path
