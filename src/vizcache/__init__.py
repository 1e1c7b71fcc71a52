"""vizcache - tiered cache and quota governor for generated wellness content."""

__version__ = "0.1.0"
__all__ = ["personalize", "speak"]


def __getattr__(name: str):  # type: ignore[no-untyped-def]
    if name == "speak":
        from .api import speak

        return speak
    if name == "personalize":
        from .api import personalize

        return personalize
    raise AttributeError(f"module 'vizcache' has no attribute {name!r}")
