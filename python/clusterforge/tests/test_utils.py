"""Unit tests for the command runner, retry, polling and ephemeral file helpers."""

from __future__ import annotations

import asyncio
import os
import sys
from unittest.mock import AsyncMock, patch

import pytest

from clusterforge.utils.async_command_runner import CommandError, run_command
from clusterforge.utils.async_retry import async_retry, linear_backoff
from clusterforge.utils.ephemeral_file import ephemeral_manager
from clusterforge.utils.polling import PollTimeout, poll_until

PY = sys.executable


class TestRunCommand:
    @pytest.mark.asyncio
    async def test_returns_stripped_stdout(self):
        out = await run_command([PY, "-c", "print('  hello  ')"], retries=1)
        assert out == "hello"

    @pytest.mark.asyncio
    async def test_env_overrides_are_merged(self):
        out = await run_command(
            [PY, "-c", "import os; print(os.environ['FORGE_TEST'], 'PATH' in os.environ)"],
            env={"FORGE_TEST": "yes"},
            retries=1,
        )
        assert out == "yes True"

    @pytest.mark.asyncio
    async def test_failure_hides_details_when_sensitive(self):
        with pytest.raises(CommandError) as exc_info:
            await run_command(
                [PY, "-c", "import sys; print('token=abc', file=sys.stderr); sys.exit(3)"],
                retries=1,
            )
        assert exc_info.value.return_code == 3
        assert "token=abc" not in str(exc_info.value)
        assert exc_info.value.stderr == ""

    @pytest.mark.asyncio
    async def test_failure_details_when_not_sensitive(self):
        with pytest.raises(CommandError) as exc_info:
            await run_command(
                [PY, "-c", "import sys; print('boom', file=sys.stderr); sys.exit(2)"],
                sensitive=False,
                retries=1,
            )
        assert "boom" in str(exc_info.value)
        assert exc_info.value.stderr == "boom"

    @pytest.mark.asyncio
    async def test_missing_binary(self):
        with pytest.raises(CommandError, match="Failed to start"):
            await run_command(["definitely-not-a-real-binary-xyz"], retries=1)

    @pytest.mark.asyncio
    async def test_timeout_kills_child(self):
        with pytest.raises(CommandError, match="timed out"):
            await run_command(
                [PY, "-c", "import time; time.sleep(30)"], retries=1, timeout=0.5
            )

    @pytest.mark.asyncio
    async def test_error_parser_message(self):
        with pytest.raises(CommandError, match="^short$"):
            await run_command(
                [PY, "-c", "import sys; sys.exit(1)"],
                retries=1,
                error_parser=lambda stderr: "short",
            )


class TestAsyncRetry:
    def test_linear_backoff(self):
        schedule = linear_backoff(10)
        assert [schedule(n) for n in (1, 2, 3)] == [10, 20, 30]

    @pytest.mark.asyncio
    async def test_retries_then_raises(self):
        calls = []

        @async_retry(retries=3, delay=0)
        async def flaky():
            calls.append(1)
            raise ValueError("nope")

        with pytest.raises(ValueError):
            await flaky()
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_no_sleep_after_last_attempt(self):
        @async_retry(retries=2, backoff=linear_backoff(5))
        async def always_fails():
            raise RuntimeError("down")

        with patch("clusterforge.utils.async_retry.asyncio.sleep", new=AsyncMock()) as sleep:
            with pytest.raises(RuntimeError):
                await always_fails()
        sleep.assert_awaited_once_with(5)

    @pytest.mark.asyncio
    async def test_unlisted_exception_not_retried(self):
        calls = []

        @async_retry(retries=3, delay=0, retry_on=(CommandError,))
        async def bad():
            calls.append(1)
            raise KeyError("x")

        with pytest.raises(KeyError):
            await bad()
        assert len(calls) == 1


class TestPollUntil:
    @pytest.mark.asyncio
    async def test_returns_first_value(self):
        answers = iter([None, None, "ready"])

        async def probe():
            return next(answers)

        assert await poll_until(probe, timeout=1.0, interval=0.01) == "ready"

    @pytest.mark.asyncio
    async def test_times_out(self):
        misses = []

        async def probe():
            return None

        async def on_miss(remaining):
            misses.append(remaining)

        with pytest.raises(PollTimeout):
            await poll_until(probe, timeout=0.05, interval=0.01, on_miss=on_miss)
        assert misses and all(r > 0 for r in misses)

    @pytest.mark.asyncio
    async def test_probes_at_least_once_with_past_deadline(self):
        calls = []

        async def probe():
            calls.append(1)
            return True

        loop = asyncio.get_running_loop()
        assert await poll_until(
            probe, timeout=0, interval=1, deadline=loop.time() - 1
        ) is True
        assert calls == [1]


class TestEphemeralManager:
    @pytest.mark.asyncio
    async def test_removed_after_use(self):
        async with ephemeral_manager("values.yaml") as path:
            with open(path, "w") as f:
                f.write("x: 1\n")
            assert os.path.exists(path)
        assert not os.path.exists(os.path.dirname(path))

    @pytest.mark.asyncio
    async def test_removed_on_error(self):
        with pytest.raises(RuntimeError):
            async with ephemeral_manager("values.yaml") as path:
                open(path, "w").close()
                raise RuntimeError("install failed")
        assert not os.path.exists(path)

    @pytest.mark.asyncio
    async def test_rejects_path_separator(self):
        with pytest.raises(ValueError):
            async with ephemeral_manager(os.path.join("a", "b")):
                pass
