"""
Agent Runner
============

Runs the external coding agent as a subprocess and streams its structured
output into a sink (log file or console) as it arrives.

The agent reads its prompt on stdin and writes one JSON event per line.
Recognised event types:
- ``stream_event`` with ``content_block_start`` / ``content_block_delta``
- ``assistant`` (complete message content)
- ``result`` (final summary text)
- ``error``
Anything that is not JSON is logged and skipped.

Key Features:
- Incremental streaming, no transcript buffering before return
- Retry with a fixed delay between attempts
- Cancellation kills the process and re-raises
- Optional per-attempt timeout
"""

from dataclasses import dataclass
from pathlib import Path
from typing import IO, List, Optional
import asyncio
import json
import logging
import os

from taskweave.config import DEFAULT_AGENT_COMMAND

logger = logging.getLogger(__name__)

# Stream-json lines can be far longer than asyncio's 64 KiB default
STREAM_LIMIT = 16 * 1024 * 1024


@dataclass
class AgentResult:
    """
    Result of an agent run.

    Attributes:
        success: True iff the process exited with status 0
        exit_code: Process exit status (-1 if it never ran or timed out)
        output: Assistant text collected from the stream
        stderr: Captured standard error
        attempts: Number of attempts made
    """
    success: bool
    exit_code: int
    output: str = ""
    stderr: str = ""
    attempts: int = 1


class _StreamState:
    def __init__(self):
        self.assistant_text: List[str] = []
        self.result_text: Optional[str] = None
        self.streamed = False

    @property
    def text(self) -> str:
        return "\n".join(self.assistant_text) or (self.result_text or "")


def _emit(sink: Optional[IO[str]], text: str) -> None:
    if sink is None or not text:
        return
    sink.write(text)
    sink.flush()


class AgentRunner:
    """
    Executes prompts through the external agent command.
    """

    def __init__(
        self,
        command: Optional[List[str]] = None,
        max_retries: int = 2,
        retry_delay: float = 5.0,
        timeout: Optional[float] = None
    ):
        """
        Args:
            command: Agent argv (defaults to the claude CLI in stream-json mode)
            max_retries: Attempts made by execute_with_retry (at least 1)
            retry_delay: Seconds between attempts
            timeout: Optional per-attempt timeout in seconds
        """
        self.command = list(command) if command else list(DEFAULT_AGENT_COMMAND)
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout

    async def execute(
        self,
        prompt: str,
        working_directory: Optional[Path] = None,
        output: Optional[IO[str]] = None
    ) -> AgentResult:
        """
        Run the agent once.

        Args:
            prompt: Prompt written to the agent's stdin
            working_directory: Directory the agent runs in
            output: Text sink receiving streamed assistant output

        Returns:
            AgentResult; failures are values, never exceptions

        Raises:
            asyncio.CancelledError: If cancelled (the process is killed first)
        """
        env = os.environ.copy()
        env.pop("CLAUDECODE", None)
        cwd = str(working_directory) if working_directory else None

        logger.debug(f"Starting agent: {' '.join(self.command)} in {cwd or os.getcwd()}")
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=cwd,
                env=env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT
            )
        except OSError as e:
            logger.error(f"Failed to start agent {self.command[0]}: {e}")
            return AgentResult(success=False, exit_code=-1, stderr=str(e))

        state = _StreamState()

        async def run() -> bytes:
            fed, _, stderr = await asyncio.gather(
                self._feed_stdin(process, prompt),
                self._read_stdout(process.stdout, output, state),
                process.stderr.read()
            )
            await process.wait()
            if not fed:
                raise BrokenPipeError("agent closed stdin before reading the prompt")
            return stderr

        try:
            stderr = await asyncio.wait_for(run(), timeout=self.timeout)
        except asyncio.CancelledError:
            await self._kill(process)
            logger.info("Agent run cancelled, process terminated")
            raise
        except asyncio.TimeoutError:
            await self._kill(process)
            logger.error(f"Agent timed out after {self.timeout}s")
            return AgentResult(success=False, exit_code=-1, output=state.text, stderr="timeout")
        except BrokenPipeError as e:
            await self._kill(process)
            logger.error(f"Agent run failed: {e}")
            return AgentResult(success=False, exit_code=process.returncode or -1, output=state.text, stderr=str(e))

        exit_code = process.returncode
        stderr_text = stderr.decode("utf-8", errors="replace").strip()
        if exit_code != 0:
            logger.warning(f"Agent exited with status {exit_code}: {stderr_text[-500:]}")
        return AgentResult(
            success=exit_code == 0,
            exit_code=exit_code,
            output=state.text,
            stderr=stderr_text
        )

    async def execute_with_retry(
        self,
        prompt: str,
        working_directory: Optional[Path] = None,
        output: Optional[IO[str]] = None
    ) -> AgentResult:
        """
        Run the agent until it succeeds or attempts are exhausted.

        Returns:
            The first successful result, or the last failure with attempts set
        """
        attempts = max(1, self.max_retries)
        result = AgentResult(success=False, exit_code=-1)

        for attempt in range(1, attempts + 1):
            logger.info(f"Agent attempt {attempt}/{attempts}")
            result = await self.execute(prompt, working_directory, output)
            result.attempts = attempt
            if result.success:
                return result

            logger.warning(f"Agent attempt {attempt}/{attempts} failed (exit {result.exit_code})")
            if attempt < attempts:
                _emit(output, f"\n[Retrying in {self.retry_delay:g}s (attempt {attempt + 1}/{attempts})]\n")
                await asyncio.sleep(self.retry_delay)

        logger.error(f"Agent failed after {attempts} attempts")
        return result

    async def _feed_stdin(self, process: asyncio.subprocess.Process, prompt: str) -> bool:
        try:
            process.stdin.write(prompt.encode("utf-8"))
            await process.stdin.drain()
            process.stdin.close()
            await process.stdin.wait_closed()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning(f"Could not write prompt to agent: {e}")
            return False
        return True

    async def _read_stdout(
        self,
        stream: asyncio.StreamReader,
        sink: Optional[IO[str]],
        state: _StreamState
    ) -> None:
        while True:
            raw = await stream.readline()
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").strip()
            if line:
                self._handle_line(line, sink, state)

    def _handle_line(self, line: str, sink: Optional[IO[str]], state: _StreamState) -> None:
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.warning(f"Non-JSON agent output: {line[:200]}")
            return
        if not isinstance(data, dict):
            logger.warning(f"Unexpected agent output: {line[:200]}")
            return

        kind = data.get("type")
        if kind == "error":
            error = data.get("error")
            if isinstance(error, dict):
                error = error.get("message", error)
            logger.error(f"Agent error: {error}")
            _emit(sink, f"\n[Error] {error}\n")

        elif kind == "stream_event":
            event = data.get("event") or {}
            event_type = event.get("type")
            if event_type == "content_block_start":
                _emit(sink, "\n")
            elif event_type == "content_block_delta":
                text = (event.get("delta") or {}).get("text")
                if text:
                    state.streamed = True
                    _emit(sink, text)

        elif kind == "assistant":
            content = (data.get("message") or {}).get("content") or []
            texts = [
                block.get("text", "")
                for block in content
                if isinstance(block, dict) and block.get("type") == "text"
            ]
            text = "".join(texts)
            if text:
                state.assistant_text.append(text)
                if not state.streamed:
                    _emit(sink, text + "\n")

        elif kind == "result":
            result = data.get("result")
            if isinstance(result, str):
                state.result_text = result

    async def _kill(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        await process.wait()
