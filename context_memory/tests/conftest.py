"""Shared fixtures: in-memory stand-ins for the OS clipboard and app lookup."""

import time

import pytest


class FakeClipboard:
    """Clipboard held in a string; reads can fail or stall on demand."""

    def __init__(self, value: str = ""):
        self.value = value
        self.fail_reads = False
        self.read_delay = 0.0
        self.reads = 0

    def read_text(self) -> str:
        self.reads += 1
        if self.read_delay:
            # blocking, like a slow pbpaste or xclip
            time.sleep(self.read_delay)
        if self.fail_reads:
            raise OSError("clipboard unavailable")
        return self.value

    def write_text(self, text: str):
        self.value = text


class FakeApplication:
    """Frontmost application with a fixed name."""

    def __init__(self, name: str = "Editor"):
        self.name = name

    def get_active_application_name(self) -> str:
        return self.name


class MemoryStore:
    """Dict-backed key-value store."""

    def __init__(self):
        self.data = {}

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value):
        self.data[key] = value

    async def delete(self, key):
        self.data.pop(key, None)


@pytest.fixture
def fake_clipboard():
    """Create an empty fake clipboard."""
    return FakeClipboard()


@pytest.fixture
def fake_app():
    """Create a fake active application resolver."""
    return FakeApplication()


@pytest.fixture
def memory_store():
    """Create an in-memory key-value store."""
    return MemoryStore()
