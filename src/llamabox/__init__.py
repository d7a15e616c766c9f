"""llamabox: package GGUF models as llamafiles or container images."""

__version__ = "0.1.0"
