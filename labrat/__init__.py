"""LabRat — environment bootstrapper for command-line tooling."""

__version__ = "0.1.0"
