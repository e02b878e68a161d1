"""redgreen — run the tests, generate code for what fails, repeat until green."""

__version__ = "0.1.0"
