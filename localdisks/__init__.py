"""Discovery, classification and reporting of local block devices on a Linux node."""

__version__ = "0.1.0"