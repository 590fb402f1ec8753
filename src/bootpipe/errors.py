from __future__ import annotations

from typing import Optional


class PipelineError(Exception):
    """Base for every failure the pipeline reports to its caller.

    ``status`` is the exit status of the external tool that failed, if any;
    ``output`` is whatever that tool printed.
    """

    exit_code = 1

    def __init__(self, message: str, *, status: Optional[int] = None, output: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.output = output

    @property
    def code(self) -> int:
        if self.status is not None and self.status != 0:
            return self.status
        return self.exit_code


class ConfigError(PipelineError):
    exit_code = 2


class UnknownBoard(ConfigError):
    def __init__(self, name: str, known: Optional[list] = None) -> None:
        hint = f" (known: {', '.join(known)})" if known else ""
        super().__init__(f"unknown board {name!r}{hint}")
        self.name = name


class BuildFailed(PipelineError):
    exit_code = 3


class PackagingFailed(PipelineError):
    exit_code = 4


class FsImageBuildFailed(PipelineError):
    exit_code = 5


class LaunchFailed(PipelineError):
    exit_code = 6


class DisassemblyFailed(PipelineError):
    exit_code = 7
