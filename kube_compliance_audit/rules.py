"""Declarative rule evaluation backed by Open Policy Agent.

Rule modules are Rego sources kept in a module table owned by a
:class:`RuleEngine`. Evaluation is delegated to a :class:`RegoRunner`; the
default runner drives the external ``opa`` binary and parses its JSON output.
"""
from __future__ import annotations

import json
import logging
import subprocess
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from shutil import which
from typing import Any, Dict, Iterator, List, Mapping, Optional

from .errors import RuleCompileError, RuleEvaluationError
from .findings import Violation

logger = logging.getLogger(__name__)

DEFAULT_QUERY = "data.compliance.violations"
EMBEDDED_PACKAGE = "kube_compliance_audit.policies"
REGO_SUFFIX = ".rego"
TEST_SUFFIX = "_test.rego"
GENERIC_TITLE = "Policy Violation"
VIOLATION_FIELDS = ("id", "title", "description", "severity", "resource", "namespace", "remediation", "category")


class ReadWriteLock:
    """Many concurrent readers or a single writer.

    Waiting writers take priority over new readers so a load is not starved
    by a steady stream of evaluations.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._waiting_writers:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._waiting_writers += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._waiting_writers -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass
class PolicyMetadata:
    """Describes one policy inside a bundle."""

    id: str
    title: str
    category: str
    severity: str = "medium"
    description: str = ""
    remediation: str = ""
    source: str = ""


@dataclass
class RuleBundle:
    """A named group of rule modules, e.g. one benchmark release."""

    name: str
    category: str
    version: str = ""
    policies: List[PolicyMetadata] = field(default_factory=list)
    modules: Dict[str, str] = field(default_factory=dict)


class RegoRunner(ABC):
    """Compiles and evaluates Rego modules on behalf of the engine."""

    @abstractmethod
    def check(self, name: str, source: str) -> None:
        """Raise :class:`RuleCompileError` when *source* is malformed."""

        raise NotImplementedError

    @abstractmethod
    def evaluate(self, modules: Mapping[str, str], query: str, input_document: Any) -> List[Any]:
        """Return the value of every expression produced by *query*."""

        raise NotImplementedError


class OpaCliRunner(RegoRunner):
    """Runner that drives the ``opa`` command line tool."""

    def __init__(self, binary: str = "opa", timeout: float = 30.0) -> None:
        self.binary = binary
        self.timeout = timeout

    def available(self) -> bool:
        return which(self.binary) is not None

    def check(self, name: str, source: str) -> None:
        with tempfile.TemporaryDirectory(prefix="kca-check-") as workdir:
            path = Path(workdir) / f"{_safe_file_name(name)}{REGO_SUFFIX}"
            path.write_text(source, encoding="utf-8")
            process = self._run([self.binary, "parse", str(path)], error_cls=RuleCompileError)
        if process.returncode != 0:
            detail = (process.stderr or process.stdout).strip()
            raise RuleCompileError(f"invalid rego in module {name}: {detail[:400]}")

    def evaluate(self, modules: Mapping[str, str], query: str, input_document: Any) -> List[Any]:
        with tempfile.TemporaryDirectory(prefix="kca-eval-") as workdir:
            for name, source in modules.items():
                path = Path(workdir) / f"{_safe_file_name(name)}{REGO_SUFFIX}"
                path.write_text(source, encoding="utf-8")
            process = self._run(
                [self.binary, "eval", "--format", "json", "--stdin-input", "--data", workdir, query],
                error_cls=RuleEvaluationError,
                stdin=json.dumps(input_document, default=str),
            )
        if process.returncode != 0:
            detail = (process.stderr or process.stdout).strip()
            raise RuleEvaluationError(f"opa eval failed: {detail[:400]}")
        try:
            payload = json.loads(process.stdout or "{}")
        except json.JSONDecodeError as exc:
            raise RuleEvaluationError(f"opa eval returned invalid JSON: {exc}") from exc

        values: List[Any] = []
        for result in payload.get("result") or []:
            for expression in result.get("expressions") or []:
                values.append(expression.get("value"))
        return values

    def _run(self, cmd: List[str], *, error_cls: type, stdin: Optional[str] = None) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                cmd,
                input=stdin,
                text=True,
                capture_output=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise error_cls(f"OPA binary {self.binary!r} not found on PATH") from exc
        except subprocess.TimeoutExpired as exc:
            raise error_cls(f"{cmd[1]} timed out after {self.timeout:.0f}s") from exc


class RuleEngine:
    """Owns a table of rule modules and evaluates resources against them.

    Any number of evaluations may run concurrently; loading modules excludes
    all evaluations until the load completes.
    """

    def __init__(self, runner: Optional[RegoRunner] = None) -> None:
        self._runner = runner or OpaCliRunner()
        self._lock = ReadWriteLock()
        self._modules: Dict[str, str] = {}
        self._bundles: List[RuleBundle] = []

    def module_count(self) -> int:
        with self._lock.read():
            return len(self._modules)

    def module_names(self) -> List[str]:
        with self._lock.read():
            return sorted(self._modules)

    def bundles(self) -> List[RuleBundle]:
        with self._lock.read():
            return list(self._bundles)

    def load_inline(self, name: str, source: str) -> None:
        """Validate and register a single module."""

        self._runner.check(name, source)
        with self._lock.write():
            self._modules[name] = source
        logger.debug("loaded inline policy %s", name)

    def load_directory(self, directory: str) -> List[str]:
        """Load every ``.rego`` file under *directory*.

        Test files (``*_test.rego``) are skipped. A file that fails to parse is
        logged and skipped; the remaining files are still loaded.
        """

        root = Path(directory)
        if not root.exists():
            raise RuleCompileError(f"policy directory {directory} does not exist")
        if not root.is_dir():
            raise RuleCompileError(f"policy path {directory} is not a directory")

        with self._lock.write():
            loaded: List[str] = []
            for path in sorted(root.rglob(f"*{REGO_SUFFIX}")):
                if not path.is_file() or path.name.endswith(TEST_SUFFIX):
                    continue
                name = _module_name(path.relative_to(root).as_posix())
                try:
                    source = path.read_text(encoding="utf-8")
                    self._runner.check(name, source)
                except (OSError, UnicodeDecodeError, RuleCompileError) as exc:
                    logger.warning("skipping policy %s: %s", path, exc)
                    continue
                self._modules[name] = source
                loaded.append(name)
                logger.debug("loaded policy module %s from %s", name, path)
        logger.info("loaded %d policy modules from %s", len(loaded), directory)
        return loaded

    def load_embedded(self, package: str = EMBEDDED_PACKAGE) -> List[str]:
        """Load the rule bundle shipped as package data."""

        try:
            root = resources.files(package)
        except ModuleNotFoundError as exc:
            raise RuleCompileError(f"embedded policy package {package} not found") from exc

        sources: Dict[str, str] = {}
        for relative, entry in _walk_traversable(root, ""):
            if not relative.endswith(REGO_SUFFIX) or relative.endswith(TEST_SUFFIX):
                continue
            sources[_module_name(relative)] = entry.read_text(encoding="utf-8")

        with self._lock.write():
            loaded: List[str] = []
            for name, source in sources.items():
                try:
                    self._runner.check(name, source)
                except RuleCompileError as exc:
                    logger.warning("skipping embedded policy %s: %s", name, exc)
                    continue
                self._modules[name] = source
                loaded.append(name)
        logger.info("loaded %d embedded policy modules", len(loaded))
        return loaded

    def load_bundle(self, bundle: RuleBundle) -> List[str]:
        """Register *bundle*; malformed modules are skipped individually."""

        with self._lock.write():
            loaded: List[str] = []
            for name, source in bundle.modules.items():
                try:
                    self._runner.check(name, source)
                except RuleCompileError as exc:
                    logger.warning("skipping module %s of bundle %s: %s", name, bundle.name, exc)
                    continue
                self._modules[name] = source
                loaded.append(name)
            self._bundles.append(bundle)
        logger.info("added policy bundle %s with %d policies", bundle.name, len(bundle.policies))
        return loaded

    def evaluate(self, resource: Any, namespace: str, query: str = DEFAULT_QUERY) -> List[Violation]:
        """Evaluate one resource and return the decoded violations.

        With no modules loaded the result is empty rather than an error.
        """

        with self._lock.read():
            modules = dict(self._modules)
        if not modules:
            logger.debug("no policy modules loaded, skipping evaluation")
            return []

        input_document = {"resource": resource, "namespace": namespace}
        try:
            values = self._runner.evaluate(modules, query, input_document)
        except RuleEvaluationError:
            raise
        except Exception as exc:
            raise RuleEvaluationError(f"rule evaluation failed: {exc}") from exc

        violations: List[Violation] = []
        for value in values:
            violations.extend(decode_violations(value))
        return violations


def decode_violations(value: Any) -> List[Violation]:
    """Decode one query result into violations.

    Accepted shapes are a list of violations, a mapping whose values are
    violations (a Rego set or object), or a single bare string. Each
    violation is an object carrying at least ``msg`` or a bare string; any
    other shape is logged and skipped.
    """

    if isinstance(value, list):
        items = value
    elif isinstance(value, dict):
        items = list(value.values())
    elif isinstance(value, str):
        items = [value]
    else:
        logger.warning("unexpected rule result type %s, skipping", type(value).__name__)
        return []

    violations: List[Violation] = []
    for item in items:
        violation = decode_violation(item)
        if violation is not None:
            violations.append(violation)
    return violations


def decode_violation(item: Any) -> Optional[Violation]:
    if isinstance(item, str):
        return Violation(msg=item, title=GENERIC_TITLE, severity="medium")
    if not isinstance(item, dict):
        logger.warning("violation is not an object: %s, skipping", type(item).__name__)
        return None

    fields = {key: item[key] for key in VIOLATION_FIELDS if isinstance(item.get(key), str)}
    message = item.get("msg")
    return Violation(msg=message if isinstance(message, str) else "", **fields)


def _module_name(relative_path: str) -> str:
    return relative_path[: -len(REGO_SUFFIX)].replace("/", ".")


def _safe_file_name(name: str) -> str:
    return "".join(char if char.isalnum() or char in "._-" else "_" for char in name)


def _walk_traversable(entry: Any, prefix: str) -> Iterator[tuple]:
    for child in entry.iterdir():
        relative = f"{prefix}{child.name}"
        if child.is_dir():
            yield from _walk_traversable(child, f"{relative}/")
        elif child.is_file():
            yield relative, child


__all__ = [
    "DEFAULT_QUERY",
    "OpaCliRunner",
    "PolicyMetadata",
    "ReadWriteLock",
    "RegoRunner",
    "RuleBundle",
    "RuleEngine",
    "decode_violation",
    "decode_violations",
]
