import atexit
import faulthandler
import os
import sys
import tempfile
import threading
from typing import Callable, List, Optional

import pytest

# The application logger writes a rotating file at import time
os.environ.setdefault("SMSLEDGER_LOG_DIR", tempfile.mkdtemp(prefix="smsledger-test-logs-"))


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _start_watchdog(timeout_seconds: int) -> Optional[threading.Timer]:
    if timeout_seconds <= 0:
        return None

    def _kill() -> None:
        try:
            faulthandler.dump_traceback(file=sys.stderr, all_threads=True)
        except Exception:
            pass
        # Hard exit so a deadlocked thread pool cannot hang CI
        os._exit(2)

    timer = threading.Timer(timeout_seconds, _kill)
    timer.daemon = True
    timer.start()
    return timer


def pytest_sessionstart(session) -> None:  # noqa: ANN001
    try:
        faulthandler.enable(all_threads=True)
    except Exception:
        pass

    # Upper bound for the whole run, default 10 minutes
    timer = _start_watchdog(_env_int("PYTEST_WATCHDOG_TIMEOUT_SECONDS", 10 * 60))
    if timer is not None:
        atexit.register(timer.cancel)


# ----------------------------------------------------------------------
# Provider fakes
# ----------------------------------------------------------------------


class FakeEmbedder:
    """
    Deterministic embeddings: one axis per marker (first marker found in
    the text wins), a shared last axis for texts without a marker.
    """

    def __init__(self, markers=(), fail_with: Optional[Exception] = None):
        self.markers = list(markers)
        self.fail_with = fail_with
        self.calls: List[List[str]] = []

    def vector_for(self, text: str) -> List[float]:
        vector = [0.0] * (len(self.markers) + 1)
        for i, marker in enumerate(self.markers):
            if marker in text:
                vector[i] = 1.0
                return vector
        vector[-1] = 1.0
        return vector

    def embed_batch(self, texts):
        self.calls.append(list(texts))
        if self.fail_with is not None:
            raise self.fail_with
        return [self.vector_for(t) for t in texts]

    @property
    def embedded_texts(self) -> List[str]:
        return [t for call in self.calls for t in call]

    def health_check(self) -> bool:
        return True


class FakeGenerator:
    """
    Scripted text generator. Either a responder(prompt, json_mode) callable
    or a queue of responses; Exception instances in either are raised.
    """

    def __init__(self, responder: Optional[Callable] = None, responses=()):
        self.responder = responder
        self.responses = list(responses)
        self.prompts: List[str] = []
        self.calls: List[dict] = []
        self._lock = threading.Lock()

    def generate(self, prompt, temperature=0.1, max_tokens=1024, json_mode=False):
        with self._lock:
            self.prompts.append(prompt)
            self.calls.append(
                {"temperature": temperature, "max_tokens": max_tokens, "json_mode": json_mode}
            )
            if self.responder is not None:
                response = self.responder(prompt, json_mode)
            elif self.responses:
                response = self.responses.pop(0)
            else:
                from smsledger.core.errors import MalformedResponse
                response = MalformedResponse("no scripted response")
        if isinstance(response, Exception):
            raise response
        return response

    def health_check(self) -> bool:
        return True


class SleepRecorder:
    """Drop-in for time.sleep that records delays instead of sleeping."""

    def __init__(self):
        self.delays: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def fake_embedder():
    return FakeEmbedder


@pytest.fixture
def fake_generator():
    return FakeGenerator


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def no_wait_caller(sleep_recorder):
    from smsledger.core.rate_limited_caller import RateLimitedCaller
    return RateLimitedCaller(max_retries=3, base_delay=2.0, sleep=sleep_recorder)

