"""Inspect, extract, build and populate initramfs images, and find kernel modules by rules."""

__version__ = "0.1.0"