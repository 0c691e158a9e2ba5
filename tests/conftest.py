import sys
from pathlib import Path

import pytest
from PySide6 import QtCore

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))


@pytest.fixture(scope="session")
def qapp():
    """A QCoreApplication for tests that need Qt signals, timers or threads."""
    app = QtCore.QCoreApplication.instance() or QtCore.QCoreApplication([])
    yield app
