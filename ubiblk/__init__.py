"""Layered block devices: file-backed I/O, sector encryption, lazily fetched stripes and log replay."""

__version__ = "0.2.0"