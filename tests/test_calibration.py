"""
Unit tests for the calibration session and rectification map persistence.
"""

import pytest
import numpy as np
import cv2
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from stereo_calib import calibration
from stereo_calib.buffers import BufferScope, ImageBuffer
from stereo_calib.calibration import (
    CalibrationSession,
    CalibrationStatus,
    detect_chessboard,
    load_rectification_maps,
    object_point_template,
    save_rectification_maps,
)
from stereo_calib.config import create_default_config
from stereo_calib.frame import split_eyes


def record_frame(session, frame):
    """Capture both eyes of a composite as a calibration pair."""
    left, right = split_eyes(frame.upright())
    return session.record_pair(ImageBuffer(left), ImageBuffer(right))


@pytest.fixture
def session():
    return CalibrationSession(create_default_config())


@pytest.fixture
def calibrated_maps(session, calibration_frames):
    for frame in calibration_frames:
        record_frame(session, frame)
    outcome = session.run()
    assert outcome.succeeded, outcome.message
    yield outcome.maps
    if not outcome.maps.released:
        outcome.maps.release()


class TestObjectPointTemplate:
    """Tests for the planar corner grid."""

    def test_layout(self):
        template = object_point_template(7, 7)

        assert template.shape == (49, 3)
        assert template.dtype == np.float32
        assert np.all(template[:, 2] == 0)
        # x runs fastest
        np.testing.assert_array_equal(template[1], [1, 0, 0])
        np.testing.assert_array_equal(template[7], [0, 1, 0])

    def test_non_square_board(self):
        template = object_point_template(6, 9)
        assert template.shape == (54, 3)
        assert template[:, 0].max() == 8
        assert template[:, 1].max() == 5


class TestDetectChessboard:
    """Tests for chessboard detection."""

    def test_detects_board(self, board_frame):
        """Test the 7x7 inner corners are found and refined."""
        left, _ = split_eyes(board_frame.upright())
        with BufferScope("test") as scope:
            observation = detect_chessboard(left, create_default_config(), scope, image_index=3)

        assert observation is not None
        assert observation.image_index == 3
        assert observation.corners.reshape(-1, 2).shape == (49, 2)

    def test_missing_board_returns_none(self, blank_frame):
        left, _ = split_eyes(blank_frame.upright())
        with BufferScope("test") as scope:
            assert detect_chessboard(left, create_default_config(), scope) is None

    def test_tiny_image_returns_none(self):
        """Test images too small for the detector count as a miss."""
        tiny = np.full((6, 8, 4), 128, dtype=np.uint8)
        with BufferScope("test") as scope:
            assert detect_chessboard(tiny, create_default_config(), scope) is None

    def test_temporaries_released_with_scope(self, board_frame):
        left, _ = split_eyes(board_frame.upright())
        with BufferScope("test") as scope:
            detect_chessboard(left, create_default_config(), scope)
            assert len(scope) == 1
        assert len(scope) == 0


class TestCalibrationSession:
    """Tests for CalibrationSession.run."""

    def test_zero_pairs_skipped(self, session):
        """Test calibrating with nothing captured is a no-op."""
        outcome = session.run()

        assert outcome.status == CalibrationStatus.SKIPPED
        assert outcome.maps is None

    def test_record_pair_copies_eyes(self, session, board_frame):
        """Test captured eyes no longer alias the composite."""
        upright = board_frame.upright()
        left, right = split_eyes(upright)
        left_handle, right_handle = ImageBuffer(left), ImageBuffer(right)

        pair = session.record_pair(left_handle, right_handle)
        upright[:] = 0

        assert left_handle.released and right_handle.released
        assert session.pair_count == 1
        assert pair.left.data.any()
        assert not pair.left.is_view

    def test_no_board_in_any_pair_fails(self, session, blank_frame):
        """Test a failed detection leaves no results and keeps the pairs."""
        for _ in range(3):
            record_frame(session, blank_frame)

        outcome = session.run()

        assert outcome.status == CalibrationStatus.FAILED
        assert outcome.maps is None
        assert session.pair_count == 3

    def test_released_side_fails(self, session, board_frame):
        """Test a pair with a released eye is reported, not dereferenced."""
        pair = record_frame(session, board_frame)
        pair.right.release()

        outcome = session.run()

        assert outcome.status == CalibrationStatus.FAILED
        assert "released" in outcome.message
        assert session.pair_count == 1

    def test_calibration_succeeds(self, session, calibration_frames):
        """Test synthetic captures produce maps and consume the pairs."""
        for frame in calibration_frames:
            record_frame(session, frame)
        pairs = session.pairs

        outcome = session.run()

        assert outcome.status == CalibrationStatus.SUCCEEDED
        maps = outcome.maps
        assert maps is not None
        assert maps.image_size == (640, 480)
        assert maps.left.map1.data.shape[:2] == (480, 640)
        assert maps.right.map1.data.shape[:2] == (480, 640)
        assert maps.q.data.shape == (4, 4)
        assert set(outcome.errors) == {"left", "right", "stereo"}
        assert all(np.isfinite(v) for v in outcome.errors.values())
        assert session.pair_count == 0
        assert all(not pair.is_complete for pair in pairs)

        maps.release()

    def test_tiny_pairs_fail_without_raising(self, session):
        session.record_pair(
            ImageBuffer(np.full((6, 8, 4), 128, dtype=np.uint8)),
            ImageBuffer(np.full((6, 8, 4), 128, dtype=np.uint8))
        )

        outcome = session.run()

        assert outcome.status == CalibrationStatus.FAILED
        assert session.pair_count == 1

    def test_board_never_in_both_eyes_fails(self, session, one_eye_frames):
        """Test the joint solve needs at least one pair seen by both eyes."""
        for frame in one_eye_frames:
            record_frame(session, frame)

        outcome = session.run()

        assert outcome.status == CalibrationStatus.FAILED
        assert outcome.message == "no pair has the chessboard visible in both eyes"
        assert outcome.maps is None
        assert session.pair_count == len(one_eye_frames)

    def test_solver_error_fails_and_keeps_pairs(self, session, calibration_frames, monkeypatch):
        """Test an exception from the stereo solve is reported as a failed run."""
        def broken_stereo_calibrate(*args, **kwargs):
            raise cv2.error("stereoCalibrate did not converge")

        monkeypatch.setattr(cv2, "stereoCalibrate", broken_stereo_calibrate)
        for frame in calibration_frames:
            record_frame(session, frame)

        outcome = session.run()

        assert outcome.status == CalibrationStatus.FAILED
        assert "did not converge" in outcome.message
        assert outcome.maps is None
        assert session.pair_count == len(calibration_frames)
        assert all(pair.is_complete for pair in session.pairs)

    def test_odd_width_uses_each_eye_size(self, session, odd_width_frames, monkeypatch):
        """Test each camera is calibrated at its own image size."""
        sizes = []
        solve = calibration.calibrate_single_camera

        def recording_solve(object_points, image_points, image_size):
            sizes.append(tuple(image_size))
            return solve(object_points, image_points, image_size)

        monkeypatch.setattr(calibration, "calibrate_single_camera", recording_solve)
        for frame in odd_width_frames:
            record_frame(session, frame)

        outcome = session.run()

        assert outcome.succeeded, outcome.message
        assert sizes == [(640, 480), (641, 480)]
        assert outcome.maps.image_size == (640, 480)
        outcome.maps.release()

    def test_discard_pairs(self, session, board_frame):
        pair = record_frame(session, board_frame)
        session.discard_pairs()

        assert session.pair_count == 0
        assert pair.left.released and pair.right.released


class TestRectificationMapPersistence:
    """Tests for saving and loading calibration results."""

    def test_save_and_load(self, calibrated_maps, tmp_path):
        path = tmp_path / "calibration.npz"
        save_rectification_maps(calibrated_maps, str(path))

        loaded = load_rectification_maps(str(path))

        assert loaded.image_size == calibrated_maps.image_size
        np.testing.assert_array_equal(loaded.q.data, calibrated_maps.q.data)
        np.testing.assert_array_equal(loaded.left.map1.data, calibrated_maps.left.map1.data)
        np.testing.assert_array_equal(loaded.right.map2.data, calibrated_maps.right.map2.data)

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_rectification_maps(str(tmp_path / "missing.npz"))

    def test_load_corrupt_file(self, tmp_path):
        path = tmp_path / "corrupt.npz"
        path.write_bytes(b"PK\x03\x04 truncated archive")

        with pytest.raises(ValueError):
            load_rectification_maps(str(path))

    def test_load_missing_field(self, tmp_path):
        path = tmp_path / "partial.npz"
        np.savez(path, q=np.eye(4))

        with pytest.raises(ValueError, match="Missing required field"):
            load_rectification_maps(str(path))

    def test_load_mismatched_size(self, tmp_path):
        path = tmp_path / "bad.npz"
        maps = np.zeros((10, 10, 2), dtype=np.int16)
        np.savez(
            path,
            map1_left=maps, map2_left=maps[:, :, 0],
            map1_right=maps, map2_right=maps[:, :, 0],
            q=np.eye(4), image_size=np.array([20, 10])
        )

        with pytest.raises(ValueError, match="does not match"):
            load_rectification_maps(str(path))
