#!/usr/bin/env python3

"""
System Maintenance Cleanup for Arch Linux

Removes orphaned packages, prunes the pacman package cache down to one version
per package, and vacuums the systemd journal. Must be run as root. Actions run
in the order given on the command line and the first failure aborts the run.

License: MIT
Version: 1.0
"""

import argparse
import logging
import os
import shutil
import subprocess
import sys
from typing import Callable, Dict, List, NoReturn, Optional, Sequence

# ==============================================================================
# GLOBAL CONSTANTS AND SETUP
# ==============================================================================

logger = logging.getLogger("arch_cleanup")
logger.setLevel(logging.INFO)

# Define custom STEP level
STEP = 25
logging.addLevelName(STEP, "STEP")

PROG = "arch-cleanup"

ORPHAN_QUERY_COMMAND = ["pacman", "-Qtdq"]
ORPHAN_REMOVE_COMMAND = ["pacman", "-Rns", "--noconfirm"]
CACHE_KEEP_VERSIONS = 1
JOURNAL_VACUUM_SIZE = "100M"

ACTION_CLEAN = "clean"
ACTION_CACHE = "cache"
ACTION_JOURNAL = "journal"
ACTION_ALL = "all"
ALL_ACTIONS = [ACTION_CLEAN, ACTION_CACHE, ACTION_JOURNAL]

HELP_FLAG = "--help"

USAGE_TEXT = f"""\
Usage: {PROG} [OPTION]...
Options:
  --clean         Remove orphaned packages
  --cache         Clean package cache
  --journal       Clean system journal
  --all           Perform all cleanup operations
  --help          Display this help message"""


# ==============================================================================
# ERRORS
# ==============================================================================


class CleanupError(Exception):
    """Base class for errors that terminate a cleanup run."""


class PrivilegeError(CleanupError):
    """Raised when the process is not running as root."""


class UsageError(CleanupError):
    """Raised for missing or unrecognized command-line arguments."""


class SubprocessLaunchError(CleanupError):
    """Raised when an external tool cannot be started."""

    def __init__(self, command: Sequence[str], reason: str) -> None:
        self.command = list(command)
        self.reason = reason
        super().__init__(f"Cannot execute ({' '.join(self.command)}): {reason}")


class SubprocessExitError(CleanupError):
    """Raised when an external tool exits with a non-zero status."""

    def __init__(self, command: Sequence[str], returncode: int) -> None:
        self.command = list(command)
        self.returncode = returncode
        super().__init__(
            f"Command failed ({' '.join(self.command)}): exit status {returncode}"
        )


# ==============================================================================
# UTILITY FUNCTIONS
# ==============================================================================


def log_step(message: str) -> None:
    """Logs a message formatted as a processing step."""
    logger.log(STEP, f"--- {message} ---")


def check_command_exists(command: str) -> bool:
    """Checks if a command exists on the system."""
    return shutil.which(command) is not None


def is_root() -> bool:
    """Returns True when the effective user is root."""
    return os.geteuid() == 0


def require_root() -> None:
    """Raises PrivilegeError unless the effective user is root."""
    if not is_root():
        raise PrivilegeError("This program must be run as root")


# ==============================================================================
# LOGGING SETUP
# ==============================================================================


class ColorFormatter(logging.Formatter):
    """Formatter that colors whole lines by level for terminal output."""

    COLORS = {
        "STEP": "\033[36m",
        "WARN": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[1;31m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        color = self.COLORS.get(record.levelname)
        if color:
            return f"{color}{message}{self.RESET}"
        return message


class MaxLevelFilter(logging.Filter):
    """Passes only records strictly below the given level."""

    def __init__(self, level: int) -> None:
        super().__init__()
        self.level = level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < self.level


def _make_handler(stream) -> logging.StreamHandler:
    handler = logging.StreamHandler(stream)
    fmt = "%(asctime)s [%(levelname)s] %(message)s"
    isatty = getattr(stream, "isatty", None)
    if isatty is not None and isatty():
        handler.setFormatter(ColorFormatter(fmt, datefmt="%H:%M:%S"))
    else:
        handler.setFormatter(logging.Formatter(fmt, datefmt="%H:%M:%S"))
    return handler


def setup_logging() -> None:
    """Routes progress messages to stdout and warnings/errors to stderr.

    Existing handlers are replaced, so calling this more than once does not
    duplicate output and always binds to the current standard streams.
    """
    logging.addLevelName(logging.WARNING, "WARN")

    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    out_handler = _make_handler(sys.stdout)
    out_handler.addFilter(MaxLevelFilter(logging.WARNING))
    logger.addHandler(out_handler)

    err_handler = _make_handler(sys.stderr)
    err_handler.setLevel(logging.WARNING)
    logger.addHandler(err_handler)


# ==============================================================================
# CORE CLASSES
# ==============================================================================


class CommandExecutor:
    """Runs external tools from an explicit argument list, never via a shell."""

    def execute(
        self,
        command: List[str],
        capture_output: bool = False,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        """Executes a command and waits for it to finish.

        Args:
            command: Command and arguments as list of strings
            capture_output: Whether to capture stdout/stderr as text
            check: Whether a non-zero exit status is an error

        Returns:
            The completed process

        Raises:
            SubprocessLaunchError: The command is missing or cannot be started
            SubprocessExitError: The command exited non-zero and check is set
        """
        command_str = " ".join(command)

        if not check_command_exists(command[0]):
            raise SubprocessLaunchError(command, "command not found")

        logger.debug(f"Executing: {command_str}")
        try:
            return subprocess.run(
                command, capture_output=capture_output, text=True, check=check
            )
        except subprocess.CalledProcessError as error:
            raise SubprocessExitError(command, error.returncode) from error
        except OSError as error:
            raise SubprocessLaunchError(command, str(error)) from error


class PackageCleaner:
    """Handles cleanup of orphaned packages and the package cache."""

    def __init__(self, executor: CommandExecutor) -> None:
        self.executor = executor

    def find_orphaned_packages(self) -> List[str]:
        """Lists packages installed as dependencies that nothing requires.

        pacman exits non-zero when there are no orphans, so only the output
        is considered.
        """
        try:
            result = self.executor.execute(
                ORPHAN_QUERY_COMMAND, capture_output=True, check=False
            )
        except SubprocessLaunchError:
            logger.error(f"Failed to execute {' '.join(ORPHAN_QUERY_COMMAND)}")
            raise
        return [pkg.strip() for pkg in result.stdout.splitlines() if pkg.strip()]

    def clean_orphaned_packages(self) -> None:
        """Removes all orphaned packages in a single pacman transaction."""
        log_step("Cleaning Orphaned Packages")

        orphaned_packages = self.find_orphaned_packages()
        if not orphaned_packages:
            logger.info("No orphaned packages found")
            return

        logger.info(f"Orphaned packages found: {', '.join(orphaned_packages)}")

        try:
            self.executor.execute(ORPHAN_REMOVE_COMMAND + orphaned_packages)
        except CleanupError:
            logger.error("Failed to remove orphaned packages")
            raise
        logger.info("Orphaned packages removed successfully")

    def clean_package_cache(self) -> None:
        """Prunes cached package archives, keeping the newest versions."""
        log_step("Cleaning Package Cache")

        try:
            self.executor.execute(["paccache", f"-rk{CACHE_KEEP_VERSIONS}"])
        except CleanupError:
            logger.error("Failed to clean package cache")
            raise
        logger.info("Package cache cleaned successfully")


class JournalCleaner:
    """Handles vacuuming of the systemd journal."""

    def __init__(self, executor: CommandExecutor) -> None:
        self.executor = executor

    def clean_journal(self) -> None:
        """Shrinks archived journal files to the configured size."""
        log_step("Cleaning System Journal")

        try:
            self.executor.execute(
                ["journalctl", f"--vacuum-size={JOURNAL_VACUUM_SIZE}"]
            )
        except CleanupError:
            logger.error("Failed to clean system journal")
            raise
        logger.info("System journal cleaned successfully")


class SystemCleanup:
    """Dispatches cleanup actions in order, stopping at the first failure."""

    def __init__(self, executor: Optional[CommandExecutor] = None) -> None:
        self.executor = executor or CommandExecutor()
        self.package_cleaner = PackageCleaner(self.executor)
        self.journal_cleaner = JournalCleaner(self.executor)
        self.tasks: Dict[str, Callable[[], None]] = {
            ACTION_CLEAN: self.package_cleaner.clean_orphaned_packages,
            ACTION_CACHE: self.package_cleaner.clean_package_cache,
            ACTION_JOURNAL: self.journal_cleaner.clean_journal,
        }

    def run(self, actions: List[str]) -> None:
        """Executes the given actions in sequence.

        Args:
            actions: Action names, each one of ALL_ACTIONS

        Raises:
            CleanupError: The first action that failed
        """
        for action in actions:
            self.tasks[action]()


# ==============================================================================
# COMMAND LINE INTERFACE
# ==============================================================================


class CleanupArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that raises UsageError instead of exiting."""

    def error(self, message: str) -> NoReturn:
        raise UsageError(message)


def build_parser() -> CleanupArgumentParser:
    """Builds the parser for the cleanup action flags."""
    parser = CleanupArgumentParser(prog=PROG, add_help=False, allow_abbrev=False)
    for action in ALL_ACTIONS + [ACTION_ALL]:
        parser.add_argument(
            f"--{action}",
            dest="actions",
            action="append_const",
            const=action,
            default=[],
        )
    return parser


def parse_actions(args: Sequence[str]) -> List[str]:
    """Converts command-line flags into an ordered list of actions.

    "--all" expands in place to every action. Any unrecognized argument
    raises UsageError before anything runs.
    """
    namespace, unknown = build_parser().parse_known_args(list(args))
    if unknown:
        raise UsageError(f"Unknown option: {unknown[0]}")

    actions: List[str] = []
    for action in namespace.actions:
        if action == ACTION_ALL:
            actions.extend(ALL_ACTIONS)
        else:
            actions.append(action)
    return actions


def print_usage() -> None:
    """Prints the usage text to stdout."""
    print(USAGE_TEXT)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Runs the cleanup tool and returns the process exit status."""
    setup_logging()
    args = list(sys.argv[1:] if argv is None else argv)

    try:
        require_root()

        if not args:
            print_usage()
            return 1

        if HELP_FLAG in args:
            # Arguments before the first --help must still be valid
            parse_actions(args[: args.index(HELP_FLAG)])
            print_usage()
            return 0

        actions = parse_actions(args)
        SystemCleanup().run(actions)
    except UsageError as error:
        logger.error(str(error))
        print_usage()
        return 1
    except CleanupError as error:
        logger.error(str(error))
        return 1

    return 0


def cli() -> None:
    """Console script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    cli()
