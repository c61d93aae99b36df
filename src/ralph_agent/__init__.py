"""Worker agent that claims jobs from a coordinator and executes them."""

__version__ = "0.4.0"
