"""Unit tests for the background session purge loop in api/main.py.

Covers:
- the loop calls SessionStore.purge_expired() repeatedly
- a failed pass is logged and the loop keeps running
- cancellation ends the loop
"""

import asyncio
from types import SimpleNamespace

from api.main import _purge_loop
from auth.errors import StoreError


class _Sessions:
    def __init__(self, fail_first: bool = False) -> None:
        self.calls = 0
        self.fail_first = fail_first

    def purge_expired(self) -> int:
        self.calls += 1
        if self.fail_first and self.calls == 1:
            raise StoreError("Could not delete session.")
        return 1


def _run_briefly(sessions: _Sessions) -> bool:
    app = SimpleNamespace(state=SimpleNamespace(auth=SimpleNamespace(sessions=sessions)))

    async def main() -> bool:
        task = asyncio.create_task(_purge_loop(app, 0.01))
        await asyncio.sleep(0.2)
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            return True
        return False

    return asyncio.run(main())


def test_purge_loop_runs_repeatedly() -> None:
    sessions = _Sessions()
    assert _run_briefly(sessions) is True
    assert sessions.calls >= 2


def test_purge_loop_survives_store_error() -> None:
    sessions = _Sessions(fail_first=True)
    _run_briefly(sessions)
    assert sessions.calls >= 2
