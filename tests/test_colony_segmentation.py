"""Tests for foreground object segmentation."""

from __future__ import annotations

import numpy as np
import pytest
from skimage.draw import disk

from colony_segmentation import (
    GRID_PROFILE,
    ROUGH_PROFILE,
    SegmentationProfile,
    label_objects,
    object_features,
    rescale,
    segment,
    threshold_mask,
)


class TestProfiles:
    def test_profiles_stay_distinct(self):
        assert ROUGH_PROFILE != GRID_PROFILE
        assert ROUGH_PROFILE.sigma < GRID_PROFILE.sigma

    def test_invalid_contrast_window(self):
        with pytest.raises(ValueError):
            SegmentationProfile(in_range=(0.8, 0.1))


def test_rescale_clips_to_window():
    out = rescale(np.array([0.0, 0.1, 0.45, 0.8, 1.0]))
    assert out.tolist() == pytest.approx([0.0, 0.0, 0.5, 1.0, 1.0])


def test_threshold_mask_of_blank_plate_is_empty(blank_plate):
    mask = threshold_mask(blank_plate)
    assert mask.dtype == bool
    assert mask.shape == blank_plate.shape
    assert not mask.any()


def test_label_objects_empty_mask():
    labels = label_objects(np.zeros((20, 20), dtype=bool))
    assert labels.max() == 0


def test_object_features_drops_elongated_objects():
    labels = np.zeros((60, 60), dtype=np.int32)
    rr, cc = disk((15, 15), 6)
    labels[rr, cc] = 1
    labels[40:44, 5:55] = 2
    objects = object_features(labels)
    assert len(objects) == 1
    assert objects[0].x == pytest.approx(15)
    assert objects[0].y == pytest.approx(15)
    assert objects[0].eccentricity < 0.8


class TestSegment:
    def test_finds_every_colony(self, grid_plate, grid_centers):
        objects = segment(grid_plate, GRID_PROFILE)
        assert len(objects) == len(grid_centers)
        found = np.array(sorted((round(o.x), round(o.y)) for o in objects))
        expected = np.array(sorted(grid_centers.values()))
        np.testing.assert_allclose(found, expected, atol=1)

    def test_rough_profile_finds_every_colony(self, grid_plate, grid_centers):
        assert len(segment(grid_plate, ROUGH_PROFILE)) == len(grid_centers)

    def test_blank_plate_gives_no_objects(self, blank_plate):
        assert segment(blank_plate) == []
