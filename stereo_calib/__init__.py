"""
Stereo Calibration & Disparity Pipeline
=======================================

Calibrates a stereo rig from a single side-by-side composite video feed using
a chessboard target, then rectifies every few frames of the live feed and
turns it into a normalized disparity map and a 3D point field.

Why did the chessboard refuse to play against the stereo camera?
It kept seeing double! ♟️📸

References:
- OpenCV Camera Calibration: https://docs.opencv.org/4.x/dc/dbb/tutorial_py_calibration.html
- OpenCV Stereo Depth: https://docs.opencv.org/4.x/dd/d53/tutorial_py_depthmap.html
- Depth perception with stereo cameras: https://learnopencv.com/depth-perception-using-stereo-camera-python-c/
"""

__version__ = "1.0.0"
