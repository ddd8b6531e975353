"""Shared fixtures for the Kaleidoscope test suite."""

import sys
from pathlib import Path
from typing import List

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from driver import Driver


class Capture:
    def __init__(self) -> None:
        self.chunks: List[str] = []

    def __call__(self, text: str) -> None:
        self.chunks.append(text)

    @property
    def text(self) -> str:
        return "".join(self.chunks)


@pytest.fixture
def output() -> Capture:
    return Capture()


@pytest.fixture
def diagnostics() -> Capture:
    return Capture()


@pytest.fixture
def driver(output: Capture, diagnostics: Capture) -> Driver:
    return Driver(filename="<test>", output_sink=output, diagnostic_sink=diagnostics, dump=False)
