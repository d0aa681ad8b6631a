"""Command line interface for the Kubernetes compliance audit tool."""
from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
import threading
from datetime import timedelta
from typing import List, Optional

from .cluster import ClusterAccessor, KubernetesCluster, SnapshotCluster
from .config import AgentConfig, load_agent_config
from .core import Scanner
from .credentials import ClusterCredentials, build_api_client
from .delivery import DEFAULT_ENDPOINT, DeliveryClient
from .errors import AuditError, DeliveryError, RuleCompileError
from .findings import SCAN_TYPES, ScanConfig, ScanResult, Severity
from .reconcile import KubernetesScanStore, ReconcileScheduler, Reconciler
from .report import export_findings_to_excel, print_report, result_to_json, write_json
from .rules import OpaCliRunner, RuleEngine
from .utils import ScanContext

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
ENV_DELIVERY_TOKEN = "KUBE_AUDIT_DELIVERY_TOKEN"


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Return parsed command line arguments."""

    parser = argparse.ArgumentParser(
        prog="kube-compliance-audit",
        description="Audit Kubernetes clusters for security and compliance issues.",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    scan = subparsers.add_parser("scan", help="Run a single compliance scan")
    scan.add_argument("--scan-type", choices=SCAN_TYPES, default="full", help="Which checks to run")
    scan.add_argument(
        "--namespace",
        "-n",
        dest="namespaces",
        action="append",
        default=[],
        help="Namespace to scan (repeatable; default: all non-system namespaces)",
    )
    scan.add_argument(
        "--severity-threshold",
        choices=[severity.value for severity in Severity],
        default=None,
        help="Only report failing findings at or above this severity",
    )
    scan.add_argument("--format", choices=("table", "json"), default="table", help="Console output format")
    scan.add_argument("--output", "-o", dest="output_path", help="Optional path to export the result as JSON")
    scan.add_argument("--excel", dest="excel_path", help="Optional path to export findings as an Excel workbook (.xlsx)")
    scan.add_argument(
        "--policy-path",
        dest="policy_paths",
        action="append",
        default=[],
        help="Additional directory of Rego policies (repeatable)",
    )
    scan.add_argument(
        "--no-embedded-policies",
        dest="embedded_policies",
        action="store_false",
        help="Do not load the bundled CIS policies",
    )
    scan.add_argument("--opa", dest="opa_binary", default="opa", help="Path to the opa binary")
    scan.add_argument("--kubeconfig", help="Path to a kubeconfig file", default=None)
    scan.add_argument("--context", help="kubeconfig context to use", default=None)
    scan.add_argument("--eks-cluster", help="Name of an EKS cluster to audit via the AWS APIs", default=None)
    scan.add_argument("--region", help="AWS region of the EKS cluster", default=None)
    scan.add_argument("--profile", help="AWS CLI profile to use", default=None)
    scan.add_argument("--snapshot", help="Scan an exported JSON snapshot instead of a live cluster")
    scan.add_argument("--workers", type=int, default=1, help="Namespaces evaluated in parallel by the rule engine")
    scan.add_argument("--timeout", type=float, default=None, help="Cancel the scan after this many seconds")
    scan.add_argument("--delivery-endpoint", default=None, help=f"Results API endpoint (default {DEFAULT_ENDPOINT})")
    scan.add_argument(
        "--delivery-token",
        default=os.environ.get(ENV_DELIVERY_TOKEN),
        help=f"Upload the result with this token (default: ${ENV_DELIVERY_TOKEN})",
    )
    scan.add_argument("--verbose", "-v", action="store_true", default=argparse.SUPPRESS, help="Enable debug logging")

    agent = subparsers.add_parser("agent", help="Run the reconciliation agent for ComplianceScan resources")
    agent.add_argument("--config", "-c", dest="config_path", default=None, help="Path to the agent JSON config")
    agent.add_argument("--verbose", "-v", action="store_true", default=argparse.SUPPRESS, help="Enable debug logging")

    return parser.parse_args(argv)


def configure_logging(level: int) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)


def build_rule_engine(embedded: bool, policy_paths: List[str], opa_binary: str = "opa") -> Optional[RuleEngine]:
    """Return a rule engine with the requested policies, or ``None`` without an OPA binary."""

    runner = OpaCliRunner(binary=opa_binary)
    if not runner.available():
        logger.warning("opa binary %r not found, policy evaluation is disabled", opa_binary)
        return None
    engine = RuleEngine(runner)
    if embedded:
        try:
            engine.load_embedded()
        except RuleCompileError as exc:
            logger.warning("failed to load embedded policies: %s", exc)
    for path in policy_paths:
        try:
            engine.load_directory(path)
        except RuleCompileError as exc:
            logger.warning("failed to load policy directory %s: %s", path, exc)
    return engine


def _open_cluster(args: argparse.Namespace, credentials: ClusterCredentials) -> ClusterAccessor:
    if args.snapshot:
        try:
            return SnapshotCluster.from_file(args.snapshot)
        except (OSError, ValueError) as exc:
            raise AuditError(f"Failed to read snapshot {args.snapshot}: {exc}") from exc
    api_client, cluster_name = build_api_client(credentials)
    return KubernetesCluster(api_client, cluster_name)


def _emit(result: ScanResult, args: argparse.Namespace) -> None:
    if args.format == "json":
        print(result_to_json(result))
    else:
        print_report(result)

    if args.output_path:
        write_json(result, args.output_path)
        print(f"Result exported to {args.output_path}", file=sys.stderr)

    if args.excel_path:
        try:
            path = export_findings_to_excel(result.findings, args.excel_path)
        except RuntimeError as exc:
            print(f"Failed to export Excel report: {exc}", file=sys.stderr)
        else:
            print(f"Excel report written to {path}", file=sys.stderr)


def _upload(result: ScanResult, config: ScanConfig) -> None:
    if not config.delivery_token:
        return
    with DeliveryClient(config.delivery_endpoint) as delivery:
        try:
            receipt = delivery.upload_scan_results(result, config.delivery_token)
        except DeliveryError as exc:
            print(f"Failed to upload scan result: {exc}", file=sys.stderr)
            return
    if receipt is not None and receipt.url:
        print(f"Scan result uploaded: {receipt.url}", file=sys.stderr)


def run_scan(args: argparse.Namespace) -> int:
    credentials = ClusterCredentials(
        kubeconfig=args.kubeconfig,
        context=args.context,
        eks_cluster=args.eks_cluster,
        region=args.region,
        profile=args.profile,
    )
    config = ScanConfig(
        scan_type=args.scan_type,
        namespaces=tuple(args.namespaces),
        severity_threshold=Severity.parse(args.severity_threshold) if args.severity_threshold else None,
        policy_paths=tuple(args.policy_paths),
        credentials=credentials,
        delivery_endpoint=args.delivery_endpoint,
        delivery_token=args.delivery_token,
        max_workers=args.workers,
    )

    try:
        config.validate()
        cluster = _open_cluster(args, credentials)
        engine = None
        if config.scan_type in ("full", "cis"):
            engine = build_rule_engine(args.embedded_policies, [], args.opa_binary)
        scanner = Scanner(cluster, engine)
        ctx = ScanContext(timeout=args.timeout)
        result = scanner.run(config, ctx)
    except AuditError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    _emit(result, args)
    _upload(result, config)
    return 0


def run_agent(args: argparse.Namespace) -> int:
    try:
        agent_config = load_agent_config(args.config_path)
    except AuditError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    if not getattr(args, "verbose", False):
        logging.getLogger().setLevel(agent_config.logging_level)

    try:
        api_client, cluster_name = build_api_client(agent_config.credentials)
    except AuditError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    cluster = KubernetesCluster(api_client, cluster_name)
    engine = build_rule_engine(agent_config.embedded_policies, list(agent_config.policy_paths))
    scanner = Scanner(cluster, engine)
    store = KubernetesScanStore(api_client, namespace=agent_config.namespace or None)
    reconciler = Reconciler(
        store,
        scanner,
        max_workers=agent_config.max_workers,
        scan_timeout=agent_config.scan_timeout_seconds,
        default_delivery_endpoint=agent_config.delivery_endpoint,
    )
    scheduler = ReconcileScheduler(reconciler)

    stop_event = threading.Event()

    def _stop(signum: int, _frame: object) -> None:
        logger.info("received signal %d, shutting down", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)

    logger.info(
        "agent started: cluster=%s namespace=%s config=%s",
        cluster_name,
        agent_config.namespace or "<all>",
        json.dumps(_describe(agent_config)),
    )
    scheduler.run_forever(stop_event, resync_interval=timedelta(seconds=agent_config.resync_interval_seconds))
    logger.info("agent stopped")
    return 0


def _describe(config: AgentConfig) -> dict:
    return {
        "resync_interval_seconds": config.resync_interval_seconds,
        "embedded_policies": config.embedded_policies,
        "policy_paths": list(config.policy_paths),
        "delivery_endpoint": config.delivery_endpoint,
        "max_workers": config.max_workers,
    }


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point used by ``python -m kube_compliance_audit``."""

    args = parse_args(argv)
    configure_logging(logging.DEBUG if getattr(args, "verbose", False) else logging.INFO)

    if args.command == "scan":
        return run_scan(args)
    return run_agent(args)


__all__ = ["build_rule_engine", "main", "parse_args"]
