"""
Subprocess execution with bounded timeouts and a single retry.

Every CLI call made by the store adapters and the scheduler goes through
CommandRunner so that no external command can block a reconciliation pass
indefinitely.
"""
import logging
import subprocess
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Completed command."""
    args: List[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandError(Exception):
    """Command exited non-zero, or could not be started."""

    def __init__(self, args: Sequence[str], returncode: int, stderr: str):
        self.args_list = list(args)
        self.returncode = returncode
        self.stderr = (stderr or "").strip()
        super().__init__(f"Command failed ({returncode}): {' '.join(self.args_list)}: {self.stderr}")


class CommandNotFound(CommandError):
    """Executable is not installed."""


class CommandTimeout(CommandError):
    """Command did not finish within the timeout."""


def is_transient(result: CommandResult) -> bool:
    """Default retry predicate: any failure is worth exactly one more try."""
    return not result.ok


class CommandRunner:
    """Runs external commands with a timeout and a bounded number of retries."""

    def __init__(self, timeout: float = 60.0, retries: int = 1, retry_delay: float = 1.0):
        """
        Initialize command runner.

        Args:
            timeout: Seconds before a single attempt is killed
            retries: Extra attempts for transient failures (never unbounded)
            retry_delay: Seconds to wait between attempts
        """
        self.timeout = timeout
        self.retries = retries
        self.retry_delay = retry_delay

    def run(
        self,
        args: Sequence[str],
        check: bool = True,
        retry: bool = False,
        transient: Callable[[CommandResult], bool] = is_transient,
        input_text: Optional[str] = None,
    ) -> CommandResult:
        """
        Run a command.

        Args:
            args: Command and arguments
            check: Raise CommandError on non-zero exit
            retry: Retry transient failures (timeouts always count as transient)
            transient: Predicate deciding whether a failed result is retried
            input_text: Optional stdin content

        Returns:
            CommandResult of the last attempt

        Raises:
            CommandNotFound: If the executable does not exist
            CommandTimeout: If the last attempt timed out
            CommandError: If check is set and the last attempt failed
        """
        args = [str(arg) for arg in args]
        attempts = 1 + (self.retries if retry else 0)
        result = None

        for attempt in range(1, attempts + 1):
            logger.debug(f"CMD ({attempt}/{attempts}): {' '.join(args)}")
            try:
                completed = subprocess.run(
                    args,
                    capture_output=True,
                    text=True,
                    timeout=self.timeout,
                    input=input_text,
                )
            except FileNotFoundError as e:
                raise CommandNotFound(args, 127, str(e))
            except subprocess.TimeoutExpired:
                logger.warning(f"Command timed out after {self.timeout}s: {' '.join(args)}")
                if attempt < attempts:
                    time.sleep(self.retry_delay)
                    continue
                raise CommandTimeout(args, -1, f"timed out after {self.timeout}s")

            result = CommandResult(
                args=args,
                returncode=completed.returncode,
                stdout=completed.stdout or "",
                stderr=completed.stderr or "",
            )
            if result.ok or attempt == attempts or not transient(result):
                break
            logger.info(f"Retrying after exit code {result.returncode}: {' '.join(args)}")
            time.sleep(self.retry_delay)

        if check and not result.ok:
            raise CommandError(args, result.returncode, result.stderr or result.stdout)
        return result
