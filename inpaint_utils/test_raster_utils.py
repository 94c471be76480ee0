import os
import sys

import numpy as np
import pytest
import torch
from PIL import Image

sys.path.append(os.path.dirname(__file__))

from raster_utils import (
    InpaintInputError, as_rgba_raster, validate_raster, check_same_size, pad_bbox, bbox_slices,
    comfy_image_to_raster, comfy_mask_to_raster, raster_to_comfy_image, fill_grid_to_comfy_mask,
    pil_to_raster, raster_to_pil,
    overlay_fill_grid, save_frames_as_gif, visualize_inpaint_result,
)


def test_as_rgba_raster_adds_opaque_alpha():
    rgb = np.full((2, 3, 3), 7, dtype=np.uint8)
    raster = as_rgba_raster(rgb)
    assert raster.shape == (2, 3, 4)
    assert (raster[..., 3] == 255).all()
    assert (raster[..., :3] == 7).all()

    gray = as_rgba_raster(np.full((2, 3), 9, dtype=np.uint8))
    assert gray.shape == (2, 3, 4)
    assert tuple(gray[1, 2]) == (9, 9, 9, 255)


def test_validate_raster_rejects_bad_input():
    with pytest.raises(InpaintInputError):
        validate_raster([[0, 0, 0, 0]])
    with pytest.raises(InpaintInputError):
        validate_raster(np.zeros((0, 3, 4), dtype=np.uint8))
    with pytest.raises(InpaintInputError):
        validate_raster(np.zeros((2, 2, 4), dtype=bool))
    with pytest.raises(InpaintInputError):
        check_same_size(np.zeros((2, 2, 4)), np.zeros((2, 3, 4)))
    assert validate_raster(np.full((1, 1, 4), 12.4)).dtype == np.uint8


def test_pad_bbox_clamps_to_raster():
    assert pad_bbox((1, 1, 3, 3), 2, 5, 5) == (0, 0, 4, 4)
    assert pad_bbox((2, 2, 2, 2), 1, 10, 10) == (1, 1, 3, 3)
    rows, cols = bbox_slices((1, 2, 3, 4))
    assert (rows.start, rows.stop, cols.start, cols.stop) == (2, 5, 1, 4)


def test_comfy_image_and_mask_conversion():
    image = torch.zeros((2, 3, 1))
    image[0, 0, 0] = 1.0
    raster = comfy_image_to_raster(image)
    assert raster.shape == (2, 3, 4)
    assert tuple(raster[0, 0]) == (255, 255, 255, 255)

    with pytest.raises(InpaintInputError):
        comfy_image_to_raster(torch.zeros((2, 3, 2)))

    mask = torch.tensor([[0.0, 1.0, 0.5]])
    mask_raster = comfy_mask_to_raster(mask)
    assert mask_raster[0, :, 3].tolist() == [0, 255, 128]

    back = raster_to_comfy_image(mask_raster, channels=4)
    assert back.shape == (1, 3, 4)
    assert back.dtype == torch.float32

    grid = fill_grid_to_comfy_mask(np.array([[True, False]]))
    assert grid.tolist() == [[1.0, 0.0]]


def test_pil_conversion():
    pil_image = Image.new("RGB", (5, 3), (10, 20, 30))
    raster = pil_to_raster(pil_image)
    assert raster.shape == (3, 5, 4)
    assert tuple(raster[2, 4]) == (10, 20, 30, 255)
    assert raster_to_pil(raster).size == (5, 3)


def test_overlay_tints_pending_pixels():
    raster = np.full((1, 2, 4), 100, dtype=np.uint8)
    overlay = overlay_fill_grid(raster, np.array([[True, False]]), alpha=0.4)
    assert overlay.shape == (1, 2, 3)
    assert tuple(overlay[0, 0]) == (162, 60, 60)
    assert tuple(overlay[0, 1]) == (100, 100, 100)


def test_debug_outputs_are_written(tmp_path):
    frames = [np.full((4, 4, 3), v, dtype=np.uint8) for v in (0, 128, 255)]
    gif_path = str(tmp_path / "fill.gif")
    assert save_frames_as_gif(frames, gif_path)
    assert os.path.exists(gif_path)
    assert not save_frames_as_gif([], str(tmp_path / "empty.gif"))

    raster = np.full((4, 4, 4), 200, dtype=np.uint8)
    png_path = visualize_inpaint_result(str(tmp_path), "case", raster, raster, raster,
                                        remaining=np.ones((4, 4), dtype=bool))
    assert png_path is not None and os.path.exists(png_path)
