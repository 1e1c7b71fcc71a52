"""Test package structure and imports."""

import sys
from pathlib import Path

# Add src to path for testing
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))


def test_package_imports() -> None:
    """Test that vizcache package can be imported."""
    import vizcache

    assert vizcache.__version__ == "0.1.0"


def test_main_module_imports() -> None:
    """Test that main module can be imported without error."""
    from vizcache.__main__ import main

    assert callable(main)


def test_lazy_api_exports() -> None:
    """Test that speak and personalize resolve from the package root."""
    import vizcache
    from vizcache.api import personalize, speak

    assert vizcache.speak is speak
    assert vizcache.personalize is personalize


def test_error_hierarchy() -> None:
    """Test that every fetch-boundary error is a CacheError."""
    from vizcache.errors import (
        CacheError,
        CorruptEntry,
        GenerationFailed,
        QuotaExceeded,
        RateLimited,
        TierUnavailable,
    )

    for error in (CorruptEntry, GenerationFailed, QuotaExceeded, RateLimited, TierUnavailable):
        assert issubclass(error, CacheError)
