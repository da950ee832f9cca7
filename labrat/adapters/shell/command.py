"""
Script installer — runs ``<modules_dir>/<category>/<name>.sh``.

Each module script is called as ``bash <script> install`` (or
``uninstall``) with the LabRat directories in its environment.  The
last non-empty line of stdout is taken as the installed version.

A script that wants shell integration writes its snippet bodies into
``$LABRAT_SNIPPET_DIR`` as ``<shell>.init`` / ``<shell>.functions``
(e.g. ``zsh.init``); they come back in the receipt and the
orchestrator registers them.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import time
from pathlib import Path

from labrat.adapters.base import InstallContext, ModuleInstaller
from labrat.core.errors import LabratError
from labrat.core.models.manifest import SHELL_KINDS
from labrat.core.models.receipt import InstallReceipt, ShellSnippetSpec

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 900


class ScriptInstaller(ModuleInstaller):
    """Install modules through their bash scripts.

    Args:
        timeout: Seconds before a script is killed.
        bash: Interpreter to run scripts with.
    """

    def __init__(self, timeout: int = DEFAULT_TIMEOUT, bash: str = "bash"):
        self._timeout = timeout
        self._bash = bash

    @property
    def name(self) -> str:
        return "script"

    def is_available(self) -> bool:
        return shutil.which(self._bash) is not None

    def script_path(self, context: InstallContext) -> Path:
        spec = context.module
        return context.settings.modules_dir / spec.category / f"{spec.name}.sh"

    def validate(self, context: InstallContext) -> tuple[bool, str]:
        script = self.script_path(context)
        if not script.is_file():
            return False, f"Install script not found: {script}"
        return True, ""

    def install(self, context: InstallContext) -> InstallReceipt:
        return self._run(context, "install")

    def uninstall(self, context: InstallContext) -> InstallReceipt:
        return self._run(context, "uninstall")

    def _run(self, context: InstallContext, operation: str) -> InstallReceipt:
        module = context.name
        script = self.script_path(context)

        valid, error = self.validate(context)
        if not valid:
            return InstallReceipt.failure(self.name, module, error, operation=operation)

        command = [self._bash, str(script), operation]
        if context.dry_run:
            return InstallReceipt.skip(
                self.name, module, f"[dry-run] would run: {' '.join(command)}",
                operation=operation,
            )

        try:
            snippet_dir = context.store.secure_temp_dir(f"labrat-{module}", context.settings.cache_dir)
        except LabratError as e:
            return InstallReceipt.failure(self.name, module, e.message, operation=operation)

        env = {
            **os.environ,
            "LABRAT_MODULE": module,
            "LABRAT_CONFIG_DIR": str(context.settings.config_dir),
            "LABRAT_DATA_DIR": str(context.settings.data_dir),
            "LABRAT_CACHE_DIR": str(context.settings.cache_dir),
            "LABRAT_SNIPPET_DIR": str(snippet_dir),
            "LABRAT_FORCE": "1" if context.force else "",
        }

        logger.debug("Executing: %s", " ".join(command))
        start = time.monotonic()
        try:
            result = subprocess.run(
                command,
                cwd=script.parent,
                env=env,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
            elapsed_ms = int((time.monotonic() - start) * 1000)
            stdout = result.stdout.strip()
            stderr = result.stderr.strip()

            if result.returncode != 0:
                return InstallReceipt.failure(
                    self.name,
                    module,
                    error=stderr or f"Script exited with code {result.returncode}",
                    operation=operation,
                    output=stdout,
                    duration_ms=elapsed_ms,
                    metadata={"script": str(script), "return_code": result.returncode},
                )

            return InstallReceipt.success(
                self.name,
                module,
                version=last_line(stdout) if operation == "install" else "unknown",
                operation=operation,
                output=stdout,
                duration_ms=elapsed_ms,
                shell=read_snippets(snippet_dir) if operation == "install" else {},
                shell_description=context.module.description,
                metadata={"script": str(script), "return_code": 0, "stderr": stderr},
            )

        except subprocess.TimeoutExpired:
            return InstallReceipt.failure(
                self.name, module,
                error=f"Script timed out after {self._timeout}s",
                operation=operation,
                metadata={"script": str(script), "timeout": self._timeout},
            )
        except OSError as e:
            return InstallReceipt.failure(
                self.name, module,
                error=f"Script execution error: {e}",
                operation=operation,
                metadata={"script": str(script)},
            )
        finally:
            shutil.rmtree(snippet_dir, ignore_errors=True)


def last_line(output: str) -> str:
    """Last non-empty line of ``output``, or ``"unknown"``."""
    for line in reversed(output.splitlines()):
        if line.strip():
            return line.strip()
    return "unknown"


def read_snippets(directory: Path) -> dict[str, ShellSnippetSpec]:
    snippets: dict[str, ShellSnippetSpec] = {}
    for shell in SHELL_KINDS:
        init_file = directory / f"{shell}.init"
        funcs_file = directory / f"{shell}.functions"
        init = init_file.read_text(encoding="utf-8") if init_file.is_file() else ""
        functions = funcs_file.read_text(encoding="utf-8") if funcs_file.is_file() else ""
        snippet = ShellSnippetSpec(init=init, functions=functions)
        if not snippet.empty:
            snippets[shell] = snippet
    return snippets
