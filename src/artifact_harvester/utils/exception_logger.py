"""Exception log for failed harvest runs.

Each failure is appended to ``<log_dir>/harvest_errors_<timestamp>_<pid>.log``
as one JSON object per line with:
- timestamp and thread name
- exception type, message and stack trace
- run context (source id, run id, statistics)
"""

import json
import os
import threading
import traceback
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional


class ExceptionLogger:
    """Appends exceptions with context to a JSON lines file.

    Safe to share between the worker threads of a HarvestPool.
    """

    _instances: Dict[Path, "ExceptionLogger"] = {}
    _instances_lock = threading.Lock()

    def __init__(self, log_file_path: Path):
        """Initialize exception logger with specific log file path.

        Args:
            log_file_path: Path to the log file for writing exceptions
        """
        self.log_file_path = log_file_path
        self._write_lock = threading.Lock()

    @classmethod
    def for_directory(cls, log_dir: Path) -> "ExceptionLogger":
        """Logger writing into ``log_dir``, one per directory per process.

        Creates the directory and a log file named with timestamp and PID.
        """
        log_dir = Path(log_dir)
        with cls._instances_lock:
            existing = cls._instances.get(log_dir)
            if existing is not None:
                return existing

            log_dir.mkdir(parents=True, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            log_file_path = log_dir / f"harvest_errors_{timestamp}_{os.getpid()}.log"
            log_file_path.touch()

            instance = cls(log_file_path)
            cls._instances[log_dir] = instance
            return instance

    @classmethod
    def reset(cls) -> None:
        with cls._instances_lock:
            cls._instances.clear()

    def log_exception(
        self,
        exception: BaseException,
        thread_name: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Log an exception with full context.

        Args:
            exception: The exception to log
            thread_name: Name of the thread where exception occurred (optional)
            context: Additional context data to include in log (optional)
        """
        log_entry = {
            "timestamp": datetime.now().isoformat(),
            "thread": thread_name or threading.current_thread().name,
            "exception_type": type(exception).__name__,
            "exception_message": str(exception),
            "stack_trace": "".join(
                traceback.format_exception(
                    type(exception), exception, exception.__traceback__
                )
            ),
            "context": context or {},
        }

        with self._write_lock:
            with open(self.log_file_path, "a") as f:
                f.write(json.dumps(log_entry, default=str))
                f.write("\n")
