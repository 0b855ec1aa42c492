"""Default adapter catalogue shipped with the package."""
