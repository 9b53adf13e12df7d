"""Release automation for a Homebrew tap: validate artifacts, patch formulae."""

__version__ = "1.0.0"
