"""
Core Utilities

Shared helpers used across the service.
"""


def mask_secret(value: str, visible: int = 4) -> str:
    """Mask a credential for log output, keeping the last few characters."""
    if not value:
        return ""
    if len(value) <= visible:
        return "*" * len(value)
    return f"{'*' * (len(value) - visible)}{value[-visible:]}"
