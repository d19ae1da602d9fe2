"""
Sandboxed execution of submitted Python code.

Each run gets its own temporary script and child interpreter under a hard
wall-clock budget. The script is removed on every exit path by the
``_temp_script`` context manager, and diagnostics are scrubbed of its path.
"""

import asyncio
import contextlib
import os
import re
import tempfile
from dataclasses import dataclass
from typing import Optional

from constants import EXECUTION_TIMEOUT, PYTHON_COMMAND, SANDBOX_MAX_CONCURRENT
from logging_config import get_logger

logger = get_logger(__name__)

SCRIPT_PREFIX = "python_code_"
CODE_PLACEHOLDER = "<your code>"

NO_OUTPUT_HELP = """Program finished (no output)
Tip: to see results, try:
- print a message: print("Hello World")
- show a variable: print(name)
- show a calculation: print(5 + 3)"""


@dataclass
class ExecutionResult:
    success: bool
    output: str


class ExecutionSandbox:
    def __init__(self, python_command: str = PYTHON_COMMAND, timeout: float = EXECUTION_TIMEOUT,
                 max_concurrent: int = SANDBOX_MAX_CONCURRENT, temp_dir: Optional[str] = None):
        self.python_command = python_command
        self.timeout = timeout
        self.temp_dir = temp_dir
        self._semaphore = asyncio.Semaphore(max_concurrent)

    async def execute(self, code: str) -> ExecutionResult:
        async with self._semaphore:
            if not await self._interpreter_available():
                return ExecutionResult(
                    False, f"Server environment error: Python interpreter unavailable (command: {self.python_command})")
            return await self._run(code)

    async def _interpreter_available(self) -> bool:
        try:
            process = await asyncio.create_subprocess_exec(
                self.python_command, "--version",
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            logger.error(f"Cannot spawn interpreter {self.python_command}: {e}")
            return False
        try:
            exit_code = await asyncio.wait_for(process.wait(), timeout=self.timeout)
        except asyncio.TimeoutError:
            self._kill(process)
            await process.wait()
            logger.error(f"Interpreter version check timed out for {self.python_command}")
            return False
        if exit_code != 0:
            logger.error(f"Interpreter version check exited with {exit_code}")
        return exit_code == 0

    @contextlib.contextmanager
    def _temp_script(self, code: str):
        fd, path = tempfile.mkstemp(prefix=SCRIPT_PREFIX, suffix=".py", dir=self.temp_dir)
        try:
            try:
                script = os.fdopen(fd, "w", encoding="utf-8")
            except Exception:
                os.close(fd)
                raise
            with script:
                script.write(code)
            yield path
        finally:
            try:
                os.unlink(path)
                logger.debug(f"Removed temporary script {path}")
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Could not remove temporary script {path}: {e}")

    async def _run(self, code: str) -> ExecutionResult:
        try:
            with self._temp_script(code) as path:
                process = await asyncio.create_subprocess_exec(
                    self.python_command, path,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env={**os.environ, "PYTHONIOENCODING": "utf-8"},
                )
                try:
                    stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
                except asyncio.TimeoutError:
                    logger.warning(f"Execution exceeded {self.timeout}s, killing pid {process.pid}")
                    self._kill(process)
                    await process.wait()
                    return ExecutionResult(
                        False, f"Execution timed out (over {self.timeout:g} seconds), the program was terminated")
                except asyncio.CancelledError:
                    self._kill(process)
                    raise
                return self._interpret(process.returncode, stdout, stderr, path)
        except OSError as e:
            logger.error(f"Sandbox I/O failure: {e}", exc_info=True)
            return ExecutionResult(False, f"System error: {e.strerror or e}")

    def _interpret(self, exit_code: int, stdout: bytes, stderr: bytes, path: str) -> ExecutionResult:
        output = stdout.decode("utf-8", errors="replace").strip()
        logger.debug(f"Child exited with {exit_code}")
        if exit_code == 0:
            return ExecutionResult(True, output or NO_OUTPUT_HELP)
        error = stderr.decode("utf-8", errors="replace").strip()
        return ExecutionResult(False, sanitize(error or f"Program failed (exit code: {exit_code})", path))

    @staticmethod
    def _kill(process):
        try:
            process.kill()
        except ProcessLookupError:
            pass


def sanitize(text: str, path: str) -> str:
    """Replace the temporary script path so server layout never reaches clients."""
    text = text.replace(path, CODE_PLACEHOLDER)
    return re.sub(r'File ".*?' + re.escape(SCRIPT_PREFIX) + r'.*?\.py"', f'File "{CODE_PLACEHOLDER}"', text)
