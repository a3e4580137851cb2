"""
StyleCam backend package.

Live face (age/gender) and clothing-label annotations for a webcam stream.
"""

__version__ = "1.0.0"
