from .client import MuxClient, MuxConfig, UploadSession, load_mux_config

__all__ = [
    "MuxClient",
    "MuxConfig",
    "UploadSession",
    "load_mux_config",
]
