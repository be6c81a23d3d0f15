"""RTMP chunk headers, handshake, control state, chunk streaming, an FLV tag relay and an HLS controller."""

__version__ = "0.1.0"

__all__ = ["__version__"]