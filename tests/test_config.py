from __future__ import annotations

import os
import socket

import pytest

from walletlookup.core.config import Settings


def test_worker_id_defaults_to_host_and_process(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("WL_WORKER_ID", raising=False)

    assert Settings().worker_id == f"{socket.gethostname()}-{os.getpid()}"


def test_worker_id_can_be_set_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WL_WORKER_ID", "worker-7")

    assert Settings().worker_id == "worker-7"
