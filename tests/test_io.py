"""
Unit tests for input loading (calibration file and images)
"""

import logging

import cv2
import numpy as np
import pytest

from twoview_sfm.errors import CalibrationError, ImageReadError, InputError
from twoview_sfm.geometry.cameras import Intrinsic
from twoview_sfm.io.calib_io import load_intrinsic_matrix, parse_intrinsic_matrix
from twoview_sfm.io.image_io import load_image

VALID_K = "800 0 320\n0 800 240\n0 0 1\n"


class TestCalibration:
    """Intrinsic matrix text files"""

    def test_parse_valid(self):
        K = parse_intrinsic_matrix(VALID_K)

        assert K.shape == (3, 3)
        assert K.dtype == np.float64
        np.testing.assert_allclose(K, [[800, 0, 320], [0, 800, 240], [0, 0, 1]])

    def test_single_line_layout(self):
        K = parse_intrinsic_matrix("1000.5 0 640 0 1000.5 360 0 0 1")
        assert K[0, 0] == 1000.5

    def test_non_square_pixels_are_accepted(self, caplog):
        """Calibration output with fx != fy loads, with a warning"""
        with caplog.at_level(logging.WARNING, logger="twoview_sfm.io.calib_io"):
            K = parse_intrinsic_matrix("1000.0 0 640\n0 1002.3 360\n0 0 1")

        assert K[0, 0] == 1000.0
        assert K[1, 1] == 1002.3
        assert "non-square pixels" in caplog.text
        assert Intrinsic.from_matrix(K, 1280, 720).focal == 1000.0

    def test_load_file(self, tmp_path):
        K = np.array([[912.25, 0.0, 301.5], [0.0, 912.25, 244.75], [0.0, 0.0, 1.0]])
        path = tmp_path / "K.txt"
        np.savetxt(path, K)

        np.testing.assert_allclose(load_intrinsic_matrix(path), K)

    def test_missing_file(self, tmp_path):
        with pytest.raises(CalibrationError):
            load_intrinsic_matrix(tmp_path / "missing.txt")

    @pytest.mark.parametrize(
        "text",
        [
            "",
            "800 0 320 0 800 240 0 0",
            "800 0 320 0 800 240 0 0 1 1",
            "800 0 320 0 eight 240 0 0 1",
            "nan 0 320 0 800 240 0 0 1",
            "800 0 inf 0 800 240 0 0 1",
            "-800 0 320 0 -800 240 0 0 1",
            "0 0 320 0 0 240 0 0 1",
            "800 0 320 0 -800 240 0 0 1",
            "800 2 320 0 800 240 0 0 1",
            "800 0 320 0 800 240 0 0 2",
            "800 0 320 0 800 240 1 0 1",
        ],
    )
    def test_malformed(self, text):
        with pytest.raises(CalibrationError):
            parse_intrinsic_matrix(text)

    def test_is_an_input_error(self):
        assert issubclass(CalibrationError, InputError)
        assert CalibrationError.exit_code == 2


class TestLoadImage:
    """Image decoding"""

    def test_color_file_is_read_as_grayscale(self, tmp_path, rng):
        path = tmp_path / "color.png"
        cv2.imwrite(str(path), rng.integers(0, 256, size=(48, 64, 3), dtype=np.uint8))

        image = load_image(path)

        assert image.shape == (48, 64)
        assert image.dtype == np.uint8

    def test_missing_file(self, tmp_path):
        with pytest.raises(ImageReadError):
            load_image(tmp_path / "nope.jpg")

    def test_undecodable_file(self, tmp_path):
        path = tmp_path / "broken.png"
        path.write_bytes(b"definitely not an image")

        with pytest.raises(ImageReadError):
            load_image(path)

    def test_directory(self, tmp_path):
        with pytest.raises(ImageReadError):
            load_image(tmp_path)
