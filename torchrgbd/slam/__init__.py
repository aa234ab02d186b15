from .rgbd_vo import RGBDVisualOdometry, RGBDVOStatus

__all__ = ["RGBDVisualOdometry", "RGBDVOStatus"]
