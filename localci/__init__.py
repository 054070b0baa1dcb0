"""localci: run CI/CD pipelines on the local machine."""

__version__ = "0.1.0"
