"""
MLCProxy Version Information
"""

VERSION = "1.0.0"
BUILD_DATE = "2025-06-02"
COPYRIGHT = "© 2025 Michael Lechner"


def get_version_info() -> str:
    """Get a formatted version string."""
    return f"{VERSION} ({BUILD_DATE})"
