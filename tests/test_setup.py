"""Test that the project setup is working correctly."""

import escrow_engine


def test_version() -> None:
    """Test that version is defined."""
    assert escrow_engine.__version__ == "0.1.0"


def test_import_modules() -> None:
    """Test that all submodules can be imported."""
    from escrow_engine import chain, custody, engine, notifier, storage

    # Just verify imports work
    assert chain is not None
    assert custody is not None
    assert engine is not None
    assert notifier is not None
    assert storage is not None
