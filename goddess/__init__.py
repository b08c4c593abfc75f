"""Service gateway building blocks: targets, discovery watching, weighted node picking and config loading."""

__version__ = "0.1.0"