"""Core orchestration for a compliance scan run."""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .analyzers import Analyzer, build_analyzers
from .cluster import ClusterAccessor
from .errors import AnalyzerError, ListingError, RuleCompileError, RuleEvaluationError, ScanCancelled
from .findings import Finding, ScanConfig, ScanResult
from .rules import DEFAULT_QUERY, RuleEngine
from .utils import ScanContext, object_name

logger = logging.getLogger(__name__)

FULL_SCAN_ANALYZERS: Tuple[str, ...] = ("rbac", "network", "pss")
SINGLE_ANALYZER_SCANS = frozenset(FULL_SCAN_ANALYZERS)

# Kinds listed for rule evaluation, in evaluation order.
RULE_TARGET_KINDS: Tuple[Tuple[str, str], ...] = (("pods", "Pod"), ("deployments", "Deployment"))


class Scanner:
    """Coordinate rule evaluation and the registered analyzers for one cluster.

    ``analyzers`` defaults to one instance of every registered analyzer. A
    scanner holds no per-run state; each :meth:`run` owns its result.
    """

    def __init__(
        self,
        cluster: ClusterAccessor,
        rule_engine: Optional[RuleEngine] = None,
        analyzers: Optional[Iterable[Analyzer]] = None,
    ) -> None:
        self.cluster = cluster
        self.rule_engine = rule_engine
        self._analyzers: Dict[str, Analyzer] = {}
        for analyzer in build_analyzers(cluster) if analyzers is None else analyzers:
            self.register_analyzer(analyzer)

    def register_analyzer(self, analyzer: Analyzer) -> None:
        self._analyzers[analyzer.name] = analyzer

    def analyzer_names(self) -> List[str]:
        return sorted(self._analyzers)

    def run(self, config: ScanConfig, ctx: Optional[ScanContext] = None) -> ScanResult:
        """Execute one scan described by *config*.

        Raises :class:`ConfigurationError` for an unknown scan type,
        :class:`ListingError` when the namespace scope cannot be resolved and
        :class:`AnalyzerError` when the only analyzer of a single-analyzer scan
        fails. A cancelled run returns what it gathered with ``partial`` set.
        """

        config.validate()
        start_time = datetime.now(timezone.utc)
        result = ScanResult(
            id=f"scan-{int(start_time.timestamp() * 1000)}",
            scan_type=config.scan_type,
            start_time=start_time,
            cluster_name=self.cluster.cluster_name(),
        )
        logger.info(
            "starting compliance scan: type=%s namespaces=%s threshold=%s",
            config.scan_type,
            list(config.namespaces) or "<all>",
            config.severity_threshold.value if config.severity_threshold else "<none>",
        )

        try:
            if ctx is not None:
                ctx.check()
            self._execute(config, ctx, result)
        except ScanCancelled:
            logger.warning(
                "scan %s cancelled, returning %d findings gathered so far", result.id, len(result.findings)
            )
            result.partial = True

        result.end_time = datetime.now(timezone.utc)
        result.duration = result.end_time - result.start_time
        result.findings = [
            finding if finding.timestamp is not None else finding.with_timestamp(result.end_time)
            for finding in result.findings
        ]
        result.compute_summary()

        if config.severity_threshold is not None:
            result = result.filter_by_threshold(config.severity_threshold)

        summary = result.summary
        logger.info(
            "compliance scan complete: id=%s duration=%.2fs total=%d passed=%d failed=%d score=%.1f%%",
            result.id,
            result.duration.total_seconds(),
            summary.total_checks,
            summary.passed_checks,
            summary.failed_checks,
            summary.score,
        )
        return result

    def _execute(self, config: ScanConfig, ctx: Optional[ScanContext], result: ScanResult) -> None:
        namespaces = self.cluster.namespaces_for_scan(list(config.namespaces), include_system=False)
        result.namespaces = namespaces
        logger.info("scanning %d namespaces: %s", len(namespaces), ", ".join(namespaces))

        self._load_policy_paths(config.policy_paths)

        if config.scan_type == "full":
            self._run_rules(result, namespaces, ctx, config.max_workers)
            for name in FULL_SCAN_ANALYZERS:
                try:
                    self._run_analyzer(result, namespaces, ctx, name)
                except AnalyzerError as exc:
                    logger.error("analyzer %s failed: %s", name, exc)
        elif config.scan_type == "cis":
            self._run_rules(result, namespaces, ctx, config.max_workers)
        elif config.scan_type in SINGLE_ANALYZER_SCANS:
            self._run_analyzer(result, namespaces, ctx, config.scan_type)

    def _load_policy_paths(self, paths: Sequence[str]) -> None:
        if not paths:
            return
        if self.rule_engine is None:
            logger.warning("no rule engine configured, ignoring %d policy paths", len(paths))
            return
        for path in paths:
            try:
                self.rule_engine.load_directory(path)
            except RuleCompileError as exc:
                logger.warning("failed to load policy directory %s: %s", path, exc)

    def _run_analyzer(
        self, result: ScanResult, namespaces: Sequence[str], ctx: Optional[ScanContext], name: str
    ) -> None:
        analyzer = self._analyzers.get(name)
        if analyzer is None:
            logger.debug("analyzer %s not registered, skipping", name)
            return
        logger.info("running analyzer %s", name)
        result.findings.extend(analyzer.analyze(ctx, namespaces))

    def _run_rules(
        self,
        result: ScanResult,
        namespaces: Sequence[str],
        ctx: Optional[ScanContext],
        max_workers: int,
    ) -> None:
        engine = self.rule_engine
        if engine is None or engine.module_count() == 0:
            logger.info("no policy modules loaded, skipping policy evaluation")
            return
        logger.info("running policy evaluation with %d modules", engine.module_count())

        if max_workers <= 1 or len(namespaces) <= 1:
            for namespace in namespaces:
                self._evaluate_namespace(engine, namespace, ctx, result.findings)
            return

        # Each namespace collects into its own list; lists are merged in
        # namespace order whether or not the run was cancelled.
        sinks: List[List[Finding]] = [[] for _ in namespaces]
        cancelled: Optional[ScanCancelled] = None
        with ThreadPoolExecutor(
            max_workers=min(max_workers, len(namespaces)), thread_name_prefix="kca-rules"
        ) as pool:
            futures = [
                pool.submit(self._evaluate_namespace, engine, namespace, ctx, sink)
                for namespace, sink in zip(namespaces, sinks)
            ]
            for future in futures:
                try:
                    future.result()
                except ScanCancelled as exc:
                    cancelled = exc
        for sink in sinks:
            result.findings.extend(sink)
        if cancelled is not None:
            raise cancelled

    def _evaluate_namespace(
        self,
        engine: RuleEngine,
        namespace: str,
        ctx: Optional[ScanContext],
        sink: List[Finding],
    ) -> None:
        for kind, kind_name in RULE_TARGET_KINDS:
            if ctx is not None:
                ctx.check()
            try:
                items = self.cluster.list_json(kind, namespace)
            except ListingError as exc:
                logger.warning("failed to list %s for policy evaluation in %s: %s", kind, namespace, exc)
                return

            for index, item in enumerate(items):
                if ctx is not None:
                    ctx.check()
                name = object_name(item) or f"{kind_name.lower()}-{index}"
                try:
                    violations = engine.evaluate(item, namespace, DEFAULT_QUERY)
                except RuleEvaluationError as exc:
                    logger.warning("policy evaluation failed for %s %s/%s: %s", kind_name, namespace, name, exc)
                    continue
                for violation in violations:
                    if not violation.resource:
                        violation.resource = f"{kind_name}/{namespace}/{name}"
                    if not violation.namespace:
                        violation.namespace = namespace
                    sink.append(violation.to_finding())


__all__ = ["FULL_SCAN_ANALYZERS", "Scanner"]
