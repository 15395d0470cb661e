"""YOLO mode: supervised autonomous development loop."""

__version__ = "0.4.0"
