"""multiwrite - unattended multi-device image flashing.

This package discovers removable drives as they are plugged in, writes a
single pre-fetched disk image onto each qualifying drive and renders live
progress for every drive on one terminal.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
