# rbuild/__init__.py
"""rbuild - build native distribution packages from shell recipes."""

__version__ = "0.1.0"
