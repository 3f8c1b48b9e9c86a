"""
Git operations on environment repository working copies.

Every command goes through a CommandRunner so tests can swap in a
FakeRunner that only performs read-only git commands for real.
"""

import shutil
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Sequence


@dataclass
class Command:
    name: str
    args: List[str] = field(default_factory=list)
    dir: Path | None = None

    def __str__(self) -> str:
        return " ".join([self.name, *self.args])


CommandRunner = Callable[[Command], str]


def default_runner(command: Command) -> str:
    """Run a command and return its stdout."""
    try:
        result = subprocess.run(
            [command.name, *command.args],
            cwd=command.dir,
            capture_output=True,
            text=True,
            check=True,
        )
    except subprocess.CalledProcessError as e:
        print(f"Error running {command}: {e}")
        print(f"Stdout: {e.stdout}")
        print(f"Stderr: {e.stderr}")
        raise
    return result.stdout


SAFE_GIT_COMMANDS = ("clone", "rev-parse", "status")


class FakeRunner:
    """Runs safelisted git subcommands for real and no-ops everything else."""

    def __init__(
        self,
        delegate: CommandRunner = default_runner,
        allowed: Sequence[str] = SAFE_GIT_COMMANDS,
    ):
        self.delegate = delegate
        self.allowed = tuple(allowed)
        self.commands: List[Command] = []

    def __call__(self, command: Command) -> str:
        self.commands.append(command)
        if command.name == "git" and command.args and command.args[0] in self.allowed:
            return self.delegate(command)
        return ""

    def faked(self) -> List[Command]:
        """Commands that were recorded but not executed."""
        return [
            c
            for c in self.commands
            if not (c.name == "git" and c.args and c.args[0] in self.allowed)
        ]


class Git:
    def __init__(self, runner: CommandRunner = default_runner, work_root: Path | None = None):
        self.runner = runner
        self.work_root = work_root

    def run(self, dir: Path | None, name: str, *args: str) -> str:
        return self.runner(Command(name, list(args), dir))

    def git(self, dir: Path | None, *args: str) -> str:
        return self.run(dir, "git", *args)

    def clone(self, url: str) -> Path:
        """Clone a repository into a fresh directory and return its path."""
        if self.work_root is not None:
            self.work_root.mkdir(parents=True, exist_ok=True)
        parent = Path(tempfile.mkdtemp(prefix="promote-", dir=self.work_root))
        dir = parent / "repo"
        try:
            self.git(None, "clone", url, str(dir))
        except Exception:
            shutil.rmtree(parent, ignore_errors=True)
            raise
        return dir

    def checkout_branch(self, dir: Path, branch: str) -> None:
        self.git(dir, "checkout", "-B", branch)

    def add_all(self, dir: Path) -> None:
        self.git(dir, "add", "--all")

    def commit(self, dir: Path, message: str) -> None:
        self.git(dir, "commit", "-m", message)

    def push(self, dir: Path, branch: str) -> None:
        self.git(dir, "push", "--force", "origin", branch)

    def status(self, dir: Path) -> str:
        return self.git(dir, "status", "--porcelain")

    def has_changes(self, dir: Path) -> bool:
        return bool(self.status(dir).strip())

    def rev_parse(self, dir: Path, ref: str = "HEAD") -> str:
        return self.git(dir, "rev-parse", ref).strip()
