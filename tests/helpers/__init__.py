"""Shared test helpers."""

from tests.helpers.fixtures import FakeBackend, FakePlanStore, FakePrompter, FakeRepository

__all__ = ["FakeBackend", "FakePlanStore", "FakePrompter", "FakeRepository"]
