"""Tests for LocalTaskRegistry."""

from taskmesh.scheduler.registry import LocalTaskRegistry


def test_claim_once() -> None:
    registry = LocalTaskRegistry()
    assert registry.claim("cleanup") is True
    assert registry.claim("cleanup") is False
    assert len(registry) == 1


def test_release_allows_new_claim() -> None:
    registry = LocalTaskRegistry()
    registry.claim("cleanup")
    assert registry.release("cleanup") is True
    assert "cleanup" not in registry
    assert registry.claim("cleanup") is True


def test_release_unknown() -> None:
    assert LocalTaskRegistry().release("nope") is False


def test_events_and_clear() -> None:
    registry = LocalTaskRegistry()
    registry.claim("a")
    registry.claim("b")
    assert registry.events == frozenset({"a", "b"})
    assert registry.is_active("a")

    registry.clear()
    assert len(registry) == 0
    assert not registry.is_active("a")
