import time
import logging
import torch
import numpy as np
import cv2
from dataclasses import dataclass, field, asdict
from typing import Tuple, Optional, List, Callable

# Works both as part of the node pack and as a standalone script (for testing)
try:
    from .raster_utils import *
except ImportError:
    from raster_utils import *

logger = logging.getLogger(__name__)

# ────────────────────────────────────────────────────────────────────────────────
#  CONFIG & RESULTS
# ────────────────────────────────────────────────────────────────────────────────

STOP_EMPTY_MASK = "empty_mask"
STOP_FILLED = "filled"
STOP_STALLED = "stalled"
STOP_MAX_SWEEPS = "max_sweeps"
STOP_CANCELLED = "cancelled"


@dataclass
class InpaintConfig:
    threshold: int = 50         # mask alpha must exceed this to be filled
    max_sweeps: int = 1000      # hard cap on diffusion sweeps
    noise_scale: float = 0.6    # texture noise, relative to neighbour dispersion
    blend_factor: float = 0.2   # weight of the 3x3 box average in the seam pass
    bbox_padding: int = 2
    mask_channel: int = ALPHA_CHANNEL
    seed: Optional[int] = None  # None -> fresh entropy on every run

    def validate(self) -> "InpaintConfig":
        if not 0 <= self.threshold <= MAX_VALUE_8_BIT:
            raise InpaintInputError(f"threshold must be in [0, 255], got {self.threshold}")
        if self.max_sweeps < 0:
            raise InpaintInputError(f"max_sweeps must be >= 0, got {self.max_sweeps}")
        if self.noise_scale < 0:
            raise InpaintInputError(f"noise_scale must be >= 0, got {self.noise_scale}")
        if not 0.0 <= self.blend_factor <= 1.0:
            raise InpaintInputError(f"blend_factor must be in [0, 1], got {self.blend_factor}")
        if self.bbox_padding < 0:
            raise InpaintInputError(f"bbox_padding must be >= 0, got {self.bbox_padding}")
        if self.mask_channel not in (0, 1, 2, 3):
            raise InpaintInputError(f"mask_channel must be one of 0..3, got {self.mask_channel}")
        return self

    def make_rng(self) -> np.random.Generator:
        return np.random.default_rng(self.seed)


@dataclass
class MaskInfo:
    fill_grid: np.ndarray       # [H,W] bool, True = needs fill
    bbox: Optional[BBox]        # padded, clamped; None when nothing to fill
    pixels_to_fill: int


@dataclass
class StagedSweep:
    """Changes computed by one sweep, not yet written to the raster."""
    ys: np.ndarray              # [N] row indices, row-major order
    xs: np.ndarray              # [N] column indices
    values: np.ndarray          # [N,3] float RGB, already clamped to [0, 255]

    def __len__(self):
        return int(self.ys.shape[0])


@dataclass
class InpaintResult:
    image: np.ndarray
    converged: bool
    stop_reason: str
    sweeps: int = 0
    pixels_filled: int = 0
    pixels_remaining: int = 0
    bbox: Optional[BBox] = None
    fill_grid: Optional[np.ndarray] = None           # pixels still pending when the loop stopped
    original_fill_grid: Optional[np.ndarray] = None
    fill_history: List[int] = field(default_factory=list)  # pending count after each sweep

    def summary(self) -> dict:
        return {
            "converged": self.converged,
            "stop_reason": self.stop_reason,
            "sweeps": self.sweeps,
            "pixels_filled": self.pixels_filled,
            "pixels_remaining": self.pixels_remaining,
            "bbox": self.bbox,
        }


# ────────────────────────────────────────────────────────────────────────────────
#  MASK BINARIZER
# ────────────────────────────────────────────────────────────────────────────────

def binarize_mask(mask: np.ndarray, threshold: int = 50, padding: int = 2,
                  channel: int = ALPHA_CHANNEL) -> MaskInfo:
    """
    Turn an RGBA mask raster into a boolean fill grid plus its padded bounding box.

    Args:
        mask: [H,W,4] uint8 mask raster
        threshold: a pixel is marked when mask[..., channel] > threshold
        padding: pixels added around the tight bounding box (clamped to the raster)
        channel: which channel carries the fill strength (alpha by default)
    """
    mask = validate_raster(mask, "mask")
    H, W = mask.shape[:2]
    fill_grid = mask[..., channel] > threshold
    pixels_to_fill = int(np.count_nonzero(fill_grid))
    if pixels_to_fill == 0:
        return MaskInfo(fill_grid=fill_grid, bbox=None, pixels_to_fill=0)

    rows = np.flatnonzero(fill_grid.any(axis=1))
    cols = np.flatnonzero(fill_grid.any(axis=0))
    tight = (int(cols[0]), int(rows[0]), int(cols[-1]), int(rows[-1]))
    return MaskInfo(fill_grid=fill_grid, bbox=pad_bbox(tight, padding, W, H), pixels_to_fill=pixels_to_fill)


# ────────────────────────────────────────────────────────────────────────────────
#  DIFFUSION FILLER
# ────────────────────────────────────────────────────────────────────────────────

class DiffusionFill:
    """Sweep-by-sweep neighbour diffusion over the masked part of one raster.

    The raster and fill grid are owned by this object for the duration of the
    fill; both are mutated in place by `commit_sweep`.
    """
    def __init__(self,
                 image: np.ndarray,          # [H,W,4] uint8, mutated in place
                 fill_grid: np.ndarray,      # [H,W] bool, mutated in place
                 bbox: BBox,
                 noise_scale: float = 0.6,
                 rng: Optional[np.random.Generator] = None):
        self.image = image
        self.fill_grid = fill_grid
        self.bbox = bbox
        self.noise_scale = noise_scale
        self.rng = rng if rng is not None else np.random.default_rng()
        self.H, self.W = fill_grid.shape
        self.pixels_to_fill = int(np.count_nonzero(fill_grid))
        self.sweep_count = 0
        self.fill_history: List[int] = []

        # Working window: bbox plus a 1px halo so neighbours of edge pixels stay visible
        min_x, min_y, max_x, max_y = bbox
        self._window = pad_bbox(bbox, 1, self.W, self.H)
        wx0, wy0 = self._window[0], self._window[1]
        self._inner = (slice(min_y - wy0, max_y - wy0 + 1), slice(min_x - wx0, max_x - wx0 + 1))

    # ────────────────────────────────────────────────────────────────────────
    #  SCAN
    # ────────────────────────────────────────────────────────────────────────
    def stage_sweep(self) -> StagedSweep:
        """Compute every fillable pixel's new color from the current snapshot, without writing."""
        rows, cols = bbox_slices(self._window)
        wx0, wy0 = self._window[0], self._window[1]
        grid = self.fill_grid[rows, cols]

        targets = np.zeros_like(grid)
        targets[self._inner] = grid[self._inner]
        ys, xs = np.nonzero(targets)  # row-major scan order
        if ys.size == 0:
            return self._empty_sweep()

        # Pad by one so out-of-raster neighbours read as "not a source"
        is_source = np.pad(~grid, 1, mode='constant', constant_values=False)
        colors = np.pad(self.image[rows, cols, :3].astype(np.float64), ((1, 1), (1, 1), (0, 0)))

        valid = np.stack([is_source[ys + 1 + dy, xs + 1 + dx] for dx, dy in NEIGHBOR_OFFSETS], axis=1)  # [N,8]
        neighbours = np.stack([colors[ys + 1 + dy, xs + 1 + dx] for dx, dy in NEIGHBOR_OFFSETS], axis=1)  # [N,8,3]
        count = valid.sum(axis=1)

        # Pixels enclosed by other fill pixels wait for a later sweep
        fillable = count > 0
        ys, xs = ys[fillable], xs[fillable]
        valid, neighbours, count = valid[fillable], neighbours[fillable], count[fillable]
        if ys.size == 0:
            return self._empty_sweep()

        weights = valid[..., np.newaxis]
        mean = (neighbours * weights).sum(axis=1) / count[:, np.newaxis]  # [N,3]
        deviation = (np.abs(neighbours - mean[:, np.newaxis, :]) * weights).sum(axis=(1, 2))
        dispersion = np.where(count > 1, deviation / count, 0.0)

        noise = self.rng.random((ys.size, 3)) - 0.5  # U[-0.5, 0.5), one draw per channel
        values = mean + noise * (dispersion * self.noise_scale)[:, np.newaxis]
        values = np.clip(values, 0, MAX_VALUE_8_BIT)

        return StagedSweep(ys=ys + wy0, xs=xs + wx0, values=values)

    def _empty_sweep(self) -> StagedSweep:
        return StagedSweep(ys=np.zeros(0, dtype=np.intp), xs=np.zeros(0, dtype=np.intp),
                           values=np.zeros((0, 3), dtype=np.float64))

    # ────────────────────────────────────────────────────────────────────────
    #  COMMIT
    # ────────────────────────────────────────────────────────────────────────
    def commit_sweep(self, staged: StagedSweep) -> int:
        """Write staged colors (RGB only), clear their fill-grid entries, return how many changed."""
        if len(staged) == 0:
            return 0
        self.image[staged.ys, staged.xs, :3] = np.rint(staged.values).astype(np.uint8)
        self.fill_grid[staged.ys, staged.xs] = False
        self.pixels_to_fill -= len(staged)
        return len(staged)

    def step(self) -> int:
        """Run one sweep; returns the number of pixels filled by it."""
        self.sweep_count += 1
        changed = self.commit_sweep(self.stage_sweep())
        self.fill_history.append(self.pixels_to_fill)

        if self.sweep_count % 10 == 0 or self.sweep_count < 5 or changed == 0:
            logger.debug(f"Sweep {self.sweep_count}: filled={changed}, remaining={self.pixels_to_fill}")
        return changed

    # ────────────────────────────────────────────────────────────────────────
    #  HELPERS
    # ────────────────────────────────────────────────────────────────────────
    def is_complete(self) -> bool:
        return self.pixels_to_fill == 0

    def fill_ratio(self, initial: int) -> float:
        return 1.0 if initial == 0 else (initial - self.pixels_to_fill) / initial


# ────────────────────────────────────────────────────────────────────────────────
#  SEAM SMOOTHER
# ────────────────────────────────────────────────────────────────────────────────

def smooth_seam(image: np.ndarray, seam_grid: np.ndarray, bbox: BBox, blend: float = 0.2) -> np.ndarray:
    """
    Blend a 3x3 box average into the pixels marked in `seam_grid` (within `bbox`).

    Box averages count only in-raster pixels and are all read from the same
    pre-smoothing snapshot; results go to a separate buffer that is copied back.
    Only RGB is touched. Returns `image`, modified in place.
    """
    H, W = seam_grid.shape
    window = pad_bbox(bbox, 1, W, H)
    rows, cols = bbox_slices(window)
    snapshot = image[rows, cols, :3].astype(np.float32)

    # Zero padding plus a ones-count keeps raster-edge averages over real pixels only
    padded = np.pad(snapshot, ((1, 1), (1, 1), (0, 0)))
    inside = np.pad(np.ones(snapshot.shape[:2], dtype=np.float32), 1)
    sums = cv2.boxFilter(padded, -1, (3, 3), normalize=False)[1:-1, 1:-1]
    counts = cv2.boxFilter(inside, -1, (3, 3), normalize=False)[1:-1, 1:-1]
    box_average = sums.astype(np.float64) / counts[..., np.newaxis]

    targets = np.zeros(snapshot.shape[:2], dtype=bool)
    wx0, wy0 = window[0], window[1]
    min_x, min_y, max_x, max_y = bbox
    inner = (slice(min_y - wy0, max_y - wy0 + 1), slice(min_x - wx0, max_x - wx0 + 1))
    targets[inner] = seam_grid[rows, cols][inner]

    smoothed = image[rows, cols, :3].copy()
    blended = snapshot.astype(np.float64) * (1 - blend) + box_average * blend
    smoothed[targets] = np.clip(np.rint(blended[targets]), 0, MAX_VALUE_8_BIT).astype(np.uint8)
    image[rows, cols, :3] = smoothed
    return image


# ────────────────────────────────────────────────────────────────────────────────
#  FRAME RECORDING (progress previews)
# ────────────────────────────────────────────────────────────────────────────────

class FrameRecorder:
    """Keeps at most ~2*n_frames overlay snapshots while sweeping, evenly spaced at the end."""
    def __init__(self, n_frames: int = 24, overlay_alpha: float = 0.4):
        self.n_frames = max(1, n_frames)
        self.overlay_alpha = overlay_alpha
        self.stride = 1
        self.frames: List[np.ndarray] = []

    def __call__(self, sweep: int, pixels_remaining: int, fill: DiffusionFill):
        if sweep % self.stride != 0 and pixels_remaining > 0:
            return
        self.frames.append(overlay_fill_grid(fill.image, fill.fill_grid, self.overlay_alpha))
        if len(self.frames) > 2 * self.n_frames:
            # Drop every other frame and halve the capture rate
            self.frames = self.frames[::2]
            self.stride *= 2

    def select(self) -> List[np.ndarray]:
        if len(self.frames) <= self.n_frames:
            return list(self.frames)
        indices = np.linspace(0, len(self.frames) - 1, self.n_frames).round().astype(int)
        return [self.frames[i] for i in indices]


# ────────────────────────────────────────────────────────────────────────────────
#  PIPELINE
# ────────────────────────────────────────────────────────────────────────────────

def inpaint(image: np.ndarray,
            mask: np.ndarray,
            config: Optional[InpaintConfig] = None,
            rng: Optional[np.random.Generator] = None,
            should_cancel: Optional[Callable[[], bool]] = None,
            on_sweep: Optional[Callable[[int, int, DiffusionFill], None]] = None) -> InpaintResult:
    """
    Fill the masked region of `image` from its surrounding pixels.

    Args:
        image: [H,W,4] uint8 RGBA raster (not modified; the result holds a copy)
        mask: [H,W,4] uint8 RGBA raster of the same size, fill strength in alpha
        config: thresholds, sweep cap, noise and blend settings
        rng: seeded generator for the texture noise; built from config.seed if omitted
        should_cancel: polled between sweeps, never inside one
        on_sweep: called after every sweep with (sweep, pixels_remaining, fill)

    Returns:
        InpaintResult with the inpainted raster and whether every masked pixel was filled
    """
    cfg = (config or InpaintConfig()).validate()
    image = validate_raster(image, "image")
    mask = validate_raster(mask, "mask")
    check_same_size(image, mask)

    output = image.copy()
    info = binarize_mask(mask, cfg.threshold, cfg.bbox_padding, cfg.mask_channel)
    if info.pixels_to_fill == 0:
        logger.info("Mask is empty, nothing to inpaint")
        return InpaintResult(image=output, converged=True, stop_reason=STOP_EMPTY_MASK,
                             fill_grid=info.fill_grid, original_fill_grid=info.fill_grid.copy())

    start_time = time.time()
    original_fill_grid = info.fill_grid.copy()
    rng = rng if rng is not None else cfg.make_rng()
    fill = DiffusionFill(output, info.fill_grid, info.bbox, noise_scale=cfg.noise_scale, rng=rng)
    logger.info(f"Inpainting {info.pixels_to_fill} pixels inside bbox {info.bbox} "
                f"(max {cfg.max_sweeps} sweeps)")

    stop_reason = STOP_FILLED
    while not fill.is_complete():
        if fill.sweep_count >= cfg.max_sweeps:
            stop_reason = STOP_MAX_SWEEPS
            break
        if should_cancel is not None and should_cancel():
            stop_reason = STOP_CANCELLED
            break
        changed = fill.step()
        if on_sweep is not None:
            on_sweep(fill.sweep_count, fill.pixels_to_fill, fill)
        if changed == 0:
            stop_reason = STOP_STALLED
            break

    converged = fill.is_complete()
    if not converged:
        logger.warning(f"Inpaint stopped ({stop_reason}) after {fill.sweep_count} sweeps "
                       f"with {fill.pixels_to_fill} pixels unfilled")

    # Only pixels that actually received a synthesized color get the seam pass;
    # pixels left pending by a stall or the sweep cap keep their source color
    filled = original_fill_grid & ~fill.fill_grid
    if filled.any():
        smooth_seam(output, filled, info.bbox, cfg.blend_factor)

    logger.info(f"Inpaint finished in {time.time() - start_time:.2f}s: {fill.sweep_count} sweeps, "
                f"fill ratio {fill.fill_ratio(info.pixels_to_fill):.3f}")

    return InpaintResult(
        image=output,
        converged=converged,
        stop_reason=stop_reason,
        sweeps=fill.sweep_count,
        pixels_filled=info.pixels_to_fill - fill.pixels_to_fill,
        pixels_remaining=fill.pixels_to_fill,
        bbox=info.bbox,
        fill_grid=fill.fill_grid,
        original_fill_grid=original_fill_grid,
        fill_history=list(fill.fill_history),
    )


# ────────────────────────────────────────────────────────────────────────────────
#  COMFYUI NODE DEFINITION
# ────────────────────────────────────────────────────────────────────────────────

class Eden_DiffusionInpaint:
    """ComfyUI node wrapping the local diffusion inpainting pipeline (no model needed)."""

    @classmethod
    def INPUT_TYPES(cls):
        default_config = InpaintConfig()
        return {
            "required": {
                "image": ("IMAGE",),  # BHWC float 0-1
                "mask": ("MASK",),    # BHW float 0-1, 1 = remove
            },
            "optional": {
                "threshold": ("INT", {"default": default_config.threshold, "min": 0, "max": 255}),
                "max_sweeps": ("INT", {"default": default_config.max_sweeps, "min": 0, "max": 100000}),
                "noise_scale": ("FLOAT", {"default": default_config.noise_scale, "min": 0.0, "max": 10.0, "step": 0.01}),
                "blend_factor": ("FLOAT", {"default": default_config.blend_factor, "min": 0.0, "max": 1.0, "step": 0.01}),
                "bbox_padding": ("INT", {"default": default_config.bbox_padding, "min": 0, "max": 256}),
                "seed": ("INT", {"default": 0, "min": 0, "max": 2147483647}),
                "n_frames": ("INT", {"default": 24, "min": 1, "max": 1000}),
            }
        }

    RETURN_TYPES = ("IMAGE", "MASK", "IMAGE", "BOOLEAN", "INT")
    RETURN_NAMES = ("image", "unfilled_mask", "fill_preview", "converged", "sweeps")
    FUNCTION = "execute"
    CATEGORY = "Eden 🌱/inpaint"

    def execute(self,
                image: torch.Tensor,
                mask: torch.Tensor,
                threshold: Optional[int] = None,
                max_sweeps: Optional[int] = None,
                noise_scale: Optional[float] = None,
                blend_factor: Optional[float] = None,
                bbox_padding: Optional[int] = None,
                seed: Optional[int] = None,
                n_frames: int = 24,
                ) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor, bool, int]:

        start_time = time.time()
        config_kwargs = {
            'threshold': threshold,
            'max_sweeps': max_sweeps,
            'noise_scale': noise_scale,
            'blend_factor': blend_factor,
            'bbox_padding': bbox_padding,
            'seed': seed,
        }
        cfg = InpaintConfig(**{k: v for k, v in config_kwargs.items() if v is not None}).validate()

        if image.dim() == 3:
            image = image.unsqueeze(0)
        if mask.dim() == 2:
            mask = mask.unsqueeze(0)
        if image.dim() != 4:
            raise InpaintInputError(f"Expected image with shape [B, H, W, C], got {tuple(image.shape)}")
        if mask.dim() != 3:
            raise InpaintInputError(f"Expected mask with shape [B, H, W], got {tuple(mask.shape)}")
        B, H, W, C = image.shape

        # match mask batch size to the image batch
        if mask.shape[0] < B:
            mask = torch.cat((mask, mask[-1].unsqueeze(0).repeat(B - mask.shape[0], 1, 1)), dim=0)
        elif mask.shape[0] > B:
            mask = mask[:B]

        print(f"DiffusionInpaint: {B} image(s) of {W}x{H}, config: {asdict(cfg)}")

        out_images, unfilled_masks = [], []
        recorder = FrameRecorder(n_frames=n_frames)
        converged_all, max_sweep_count = True, 0
        for b in range(B):
            raster = comfy_image_to_raster(image[b])
            mask_raster = comfy_mask_to_raster(mask[b])
            # Each batch item gets its own stream so results don't depend on batch position
            rng = np.random.default_rng(None if cfg.seed is None else cfg.seed + b)
            result = inpaint(raster, mask_raster, cfg, rng=rng, on_sweep=recorder if b == 0 else None)
            if b == 0 and result.pixels_remaining == 0 and result.sweeps > 0:
                recorder.frames.append(result.image[..., :3].copy())

            print(f"  item {b}: {result.summary()}")
            out_images.append(raster_to_comfy_image(result.image, channels=C))
            unfilled_masks.append(fill_grid_to_comfy_mask(result.fill_grid))
            converged_all = converged_all and result.converged
            max_sweep_count = max(max_sweep_count, result.sweeps)

        frames = recorder.select()
        if frames:
            fill_preview = torch.from_numpy(np.stack(frames).astype(np.float32) / MAX_VALUE_8_BIT)
        else:
            fill_preview = image[:1, ..., :3].clone() if C >= 3 else image[:1].repeat(1, 1, 1, 3)

        print(f"DiffusionInpaint finished in {time.time() - start_time:.2f}s "
              f"(converged={converged_all}, sweeps={max_sweep_count})")
        return torch.stack(out_images), torch.stack(unfilled_masks), fill_preview, converged_all, max_sweep_count


# ────────────────────────────────────────────────────────────────────────────────
#  DEMO (Example - Not run by default in ComfyUI)
# ────────────────────────────────────────────────────────────────────────────────
if __name__ == "__main__":
    import os
    import matplotlib
    matplotlib.use('Agg')  # Use non-interactive backend for saving files

    try:
        from .mask_presets import corner_watermark_mask, stroke_mask, combine_masks
    except ImportError:
        from mask_presets import corner_watermark_mask, stroke_mask, combine_masks

    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    output_dir = os.path.join(os.path.dirname(os.path.abspath(__file__)), "test_output")
    os.makedirs(output_dir, exist_ok=True)

    # Gradient background with a fake watermark in the corner and a scribble across it
    H, W = 240, 320
    gradient = np.zeros((H, W, 4), dtype=np.uint8)
    gradient[..., 0] = np.linspace(30, 220, W, dtype=np.float32)[np.newaxis, :].astype(np.uint8)
    gradient[..., 1] = np.linspace(60, 180, H, dtype=np.float32)[:, np.newaxis].astype(np.uint8)
    gradient[..., 2] = 120
    gradient[..., 3] = 255
    cv2.putText(gradient, "(c) eden", (W - 130, H - 25), cv2.FONT_HERSHEY_SIMPLEX, 0.8, (255, 255, 255, 255), 2)

    mask = combine_masks(corner_watermark_mask(W, H),
                         stroke_mask(W, H, [[(20, 20), (120, 90), (200, 60)]], brush_size=12))

    recorder = FrameRecorder(n_frames=30)
    result = inpaint(gradient, mask, InpaintConfig(seed=42), on_sweep=recorder)
    print(f"Result: {result.summary()}")

    save_frames_as_gif(recorder.select(), os.path.join(output_dir, "demo_fill_process.gif"))
    visualize_inpaint_result(output_dir, "demo", gradient, mask, result.image, result.fill_grid)
    raster_to_pil(result.image).save(os.path.join(output_dir, "demo_inpainted.png"))
