import os
import textwrap

import pytest

from config import load_config

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
STACK_CONFIG = os.path.join(ROOT, "config.yaml")


@pytest.fixture
def stack_config():
    return load_config(STACK_CONFIG)


@pytest.fixture
def write_config(tmp_path):
    """Write a declaration file under tmp_path and return its path."""

    def _write(body: str, relative: str = "config.yaml") -> str:
        path = tmp_path / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(body))
        return str(path)

    return _write
