"""PacketFlow - plugin-extensible multi-step data pipelines."""

__version__ = "0.1.0"
