"""
Tests for dialect detection and cancellable worker calls.
"""
import asyncio
import threading
from types import SimpleNamespace

import pytest
from storedproc.exceptions import OperationCancelled
from storedproc.utils import ensure_commit, get_dialect_name, get_raw_connection
from storedproc.utils import run_cancellable


class TestGetDialectName:

    def test_from_dialect_object(self):
        assert get_dialect_name(SimpleNamespace(dialect=SimpleNamespace(name='PostgreSQL'))) == 'postgresql'

    def test_from_dialect_string(self):
        assert get_dialect_name(SimpleNamespace(dialect='mssql')) == 'mssql'

    def test_from_engine(self):
        engine = SimpleNamespace(dialect=SimpleNamespace(name='mssql'))
        assert get_dialect_name(SimpleNamespace(engine=engine)) == 'mssql'

    def test_unknown(self):
        with pytest.raises(AttributeError):
            get_dialect_name(object())


def test_get_raw_connection():
    raw = object()
    assert get_raw_connection(SimpleNamespace(driver_connection=raw)) is raw
    assert get_raw_connection(raw) is raw


def test_ensure_commit_ignores_failures(mocker):
    conn = mocker.Mock()
    conn.commit.side_effect = RuntimeError('no transaction')
    conn.driver_connection.commit.side_effect = RuntimeError('autocommit')
    ensure_commit(conn)
    conn.commit.assert_called_once()
    conn.driver_connection.commit.assert_called_once()


class TestRunCancellable:

    def test_returns_result(self):
        assert asyncio.run(run_cancellable(lambda a, b: a + b, 2, 3)) == 5

    def test_propagates_error(self):
        def fail():
            raise LookupError('missing')

        with pytest.raises(LookupError, match='missing'):
            asyncio.run(run_cancellable(fail))

    def test_unset_signal_does_not_interfere(self):
        async def run():
            return await run_cancellable(lambda: 'done', cancel=asyncio.Event())

        assert asyncio.run(run()) == 'done'

    def test_preset_signal_skips_call(self):
        called = []

        async def run():
            cancel = asyncio.Event()
            cancel.set()
            await run_cancellable(called.append, 1, cancel=cancel)

        with pytest.raises(OperationCancelled):
            asyncio.run(run())
        assert called == []

    def test_cancel_waits_for_worker(self):
        """The hook interrupts the worker and the call settles before raising"""
        release = threading.Event()
        finished = []

        def work():
            release.wait(5)
            finished.append(True)

        async def run():
            cancel = asyncio.Event()
            task = asyncio.create_task(run_cancellable(work, cancel=cancel, on_cancel=release.set))
            await asyncio.sleep(0.05)
            cancel.set()
            await task

        with pytest.raises(OperationCancelled):
            asyncio.run(run())
        assert finished == [True]

    def test_failing_hook_still_raises_cancelled(self):
        release = threading.Event()

        def hook():
            release.set()
            raise RuntimeError('cancel failed')

        async def run():
            cancel = asyncio.Event()
            task = asyncio.create_task(
                run_cancellable(release.wait, 5, cancel=cancel, on_cancel=hook))
            await asyncio.sleep(0.05)
            cancel.set()
            await task

        with pytest.raises(OperationCancelled):
            asyncio.run(run())

    def test_task_cancellation_settles_worker(self):
        release = threading.Event()
        finished = []

        def work():
            release.wait(5)
            finished.append(True)

        async def run():
            task = asyncio.create_task(run_cancellable(work, on_cancel=release.set))
            await asyncio.sleep(0.05)
            task.cancel()
            await task

        with pytest.raises(asyncio.CancelledError):
            asyncio.run(run())
        assert finished == [True]


if __name__ == '__main__':
    __import__('pytest').main([__file__])
