"""
Tiered variable storage.

Variables come from four sources with fixed precedence (lowest to highest):
built-in, configuration file, environment, CLI argument. Each tier is its own
map so that setting a value in one tier never disturbs another, and a lookup
simply walks the tiers from highest to lowest.
"""

import getpass
import logging
import os
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import IntEnum
from pathlib import Path
from typing import Dict, Mapping, Optional

from .. import __version__
from ..security.secrets import SecretMasker


logger = logging.getLogger(__name__)

ENV_VAR_PREFIX = "LOCALCI_VAR_"
ENV_SECRET_PREFIX = "LOCALCI_SECRET_"


class VariableSource(IntEnum):
    """Variable tiers; a higher value wins on conflicts."""
    BUILT_IN = 0
    CONFIGURATION = 1
    ENVIRONMENT = 2
    CLI_ARGUMENT = 3


@dataclass(frozen=True)
class VariableContext:
    """Runtime facts that built-in variables are computed from."""
    workspace: str = ""
    runner: str = "local"
    job_name: str = ""
    step_name: str = ""

    def for_job(self, job_name: str, runner: Optional[str] = None) -> "VariableContext":
        return replace(self, job_name=job_name, runner=runner or self.runner, step_name="")

    def for_step(self, step_name: str) -> "VariableContext":
        return replace(self, step_name=step_name)


class BuiltInVariables:
    """Names and computation of built-in variables."""

    VERSION = "LOCALCI_VERSION"
    WORKSPACE = "LOCALCI_WORKSPACE"
    RUNNER = "LOCALCI_RUNNER"
    JOB = "LOCALCI_JOB"
    STEP = "LOCALCI_STEP"
    HOME = "HOME"
    USER = "USER"
    PWD = "PWD"
    TIMESTAMP = "TIMESTAMP"
    TIMESTAMP_UNIX = "TIMESTAMP_UNIX"

    @classmethod
    def compute(cls, context: VariableContext) -> Dict[str, str]:
        """Compute built-in values for a context."""
        now = datetime.now(timezone.utc)
        workspace = context.workspace or os.getcwd()
        try:
            user = getpass.getuser()
        except (KeyError, OSError):
            user = os.environ.get("USER", "")
        return {
            cls.VERSION: __version__,
            cls.WORKSPACE: workspace,
            cls.RUNNER: context.runner,
            cls.JOB: context.job_name,
            cls.STEP: context.step_name,
            cls.HOME: str(Path.home()),
            cls.USER: user,
            cls.PWD: workspace,
            cls.TIMESTAMP: now.strftime("%Y-%m-%dT%H:%M:%SZ"),
            cls.TIMESTAMP_UNIX: str(int(time.time())),
        }


class VariableStore:
    """
    Thread-safe, tiered variable store.

    A store is created per run and passed explicitly to whatever needs it.
    Backends read through ``scoped()`` views so parallel jobs never race on
    built-in values such as LOCALCI_JOB.
    """

    def __init__(self, context: Optional[VariableContext] = None):
        """
        Initialize store.

        Args:
            context: Initial context for built-in variables
        """
        self._lock = threading.RLock()
        self._tiers: Dict[VariableSource, Dict[str, str]] = {source: {} for source in VariableSource}
        self._context = context or VariableContext()
        self._tiers[VariableSource.BUILT_IN] = BuiltInVariables.compute(self._context)

    @property
    def context(self) -> VariableContext:
        with self._lock:
            return self._context

    def resolve(self, name: str) -> Optional[str]:
        """
        Resolve a variable from the highest-precedence tier that defines it.

        Returns:
            The value, or None if no tier defines the name
        """
        with self._lock:
            for source in sorted(VariableSource, reverse=True):
                tier = self._tiers[source]
                if name in tier:
                    return tier[name]
        return None

    def contains(self, name: str) -> bool:
        return self.resolve(name) is not None

    def set_variable(self, name: str, value: str, source: VariableSource) -> None:
        """
        Set a variable in one tier.

        Raises:
            ValueError: If the name is empty or the tier is BUILT_IN
        """
        if not name:
            raise ValueError("Variable name must not be empty")
        if source == VariableSource.BUILT_IN:
            raise ValueError("Built-in variables cannot be set directly; use update_context()")
        with self._lock:
            self._tiers[source][name] = "" if value is None else str(value)

    def load_from_mapping(self, values: Mapping[str, object], source: VariableSource) -> None:
        for name, value in values.items():
            self.set_variable(str(name), "" if value is None else str(value), source)

    def load_from_environment(
        self,
        environ: Optional[Mapping[str, str]] = None,
        masker: Optional[SecretMasker] = None,
    ) -> int:
        """
        Load prefixed variables from the process environment.

        LOCALCI_VAR_NAME becomes NAME. LOCALCI_SECRET_NAME becomes NAME and its
        value is registered with the masker.

        Returns:
            Number of variables loaded
        """
        environ = os.environ if environ is None else environ
        loaded = 0
        for key, value in environ.items():
            if key.startswith(ENV_SECRET_PREFIX) and len(key) > len(ENV_SECRET_PREFIX):
                name = key[len(ENV_SECRET_PREFIX):]
                self.set_variable(name, value, VariableSource.ENVIRONMENT)
                if masker is not None:
                    masker.register_secret(value)
                loaded += 1
            elif key.startswith(ENV_VAR_PREFIX) and len(key) > len(ENV_VAR_PREFIX):
                self.set_variable(key[len(ENV_VAR_PREFIX):], value, VariableSource.ENVIRONMENT)
                loaded += 1
        logger.debug(f"Loaded {loaded} variables from environment")
        return loaded

    def clear_source(self, source: VariableSource) -> None:
        """Remove every variable in one tier. Clearing BUILT_IN recomputes it."""
        with self._lock:
            if source == VariableSource.BUILT_IN:
                self._tiers[source] = BuiltInVariables.compute(self._context)
            else:
                self._tiers[source] = {}

    def get_source(self, name: str) -> Optional[VariableSource]:
        """Return the tier the effective value of a name comes from."""
        with self._lock:
            for source in sorted(VariableSource, reverse=True):
                if name in self._tiers[source]:
                    return source
        return None

    def all_variables(self) -> Dict[str, str]:
        """Return the merged view, higher tiers overriding lower ones."""
        with self._lock:
            merged: Dict[str, str] = {}
            for source in sorted(VariableSource):
                merged.update(self._tiers[source])
            return merged

    def update_context(self, context: VariableContext) -> None:
        """Replace the context and recompute built-in variables."""
        with self._lock:
            self._context = context
            self._tiers[VariableSource.BUILT_IN] = BuiltInVariables.compute(context)

    def scoped(self, context: VariableContext) -> "ScopedVariables":
        """Return a read-only view whose built-ins come from ``context``."""
        return ScopedVariables(self, context)


class ScopedVariables:
    """Read-only view of a store with its own built-in tier."""

    def __init__(self, store: VariableStore, context: VariableContext):
        self.store = store
        self.context = context
        self._built_ins = BuiltInVariables.compute(context)

    def resolve(self, name: str) -> Optional[str]:
        source = self.store.get_source(name)
        if source is not None and source != VariableSource.BUILT_IN:
            return self.store.resolve(name)
        if name in self._built_ins:
            return self._built_ins[name]
        return self.store.resolve(name)

    def for_step(self, step_name: str) -> "ScopedVariables":
        return ScopedVariables(self.store, self.context.for_step(step_name))

    def all_variables(self) -> Dict[str, str]:
        merged = dict(self._built_ins)
        for name, value in self.store.all_variables().items():
            if self.store.get_source(name) != VariableSource.BUILT_IN:
                merged[name] = value
        return merged
