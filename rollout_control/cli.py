import argparse
import asyncio
import json
import os
import sys
from dataclasses import asdict

from .canary import HttpWebhookChecker
from .config import load_pipeline_overrides, load_settings
from .engine import PipelineOrchestrator, default_executors
from .inmemory import InMemoryClusterGateway, StaticMetricsSource
from .interfaces import LoggingNotifier, TagBuilder
from .logger import get_logger, setup_logging
from .models import DeploymentTarget, Strategy
from .rollback import RollbackAutomationManager
from .service import ControlPlane

STRATEGIES = [s.value for s in Strategy]


def load_state(path):
    logger = get_logger("cli")
    try:
        with open(path) as f:
            return InMemoryClusterGateway.from_dict(json.load(f))
    except Exception as e:
        logger.error(f"Error loading cluster state: {e}")
        raise


def save_state(path, gateway):
    with open(path, "w") as f:
        json.dump(gateway.to_dict(), f, indent=2)


def load_history(path, orchestrator):
    if path and os.path.exists(path):
        with open(path) as f:
            orchestrator.import_history(json.load(f))


def save_history(path, orchestrator):
    with open(path, "w") as f:
        json.dump(orchestrator.export_history(), f, indent=2, default=str)


def build_control_plane(settings, state=None):
    """Wire gateway, metrics, executors and managers for the configured backend"""
    if settings.backend == "memory":
        gateway = load_state(state) if state and os.path.exists(state) else InMemoryClusterGateway()
        metrics = StaticMetricsSource()
    elif settings.backend == "kubernetes":
        from .kube import KubernetesGateway
        from .prometheus import PrometheusMetricsSource
        gateway = KubernetesGateway.from_settings(settings)
        metrics = PrometheusMetricsSource(settings.prometheus_url, timeout_s=settings.request_timeout_s)
    else:
        raise ValueError(f"Unknown backend: {settings.backend}")

    executors = default_executors(gateway, metrics, HttpWebhookChecker(timeout_s=settings.webhook_timeout_s))
    rollback_manager = RollbackAutomationManager(gateway, metrics, notifier=LoggingNotifier())
    orchestrator = PipelineOrchestrator(gateway, builder=TagBuilder(settings.registry),
                                        rollback_manager=rollback_manager, executors=executors)
    return ControlPlane(orchestrator), gateway


def pipeline_options(args):
    options = load_pipeline_overrides(getattr(args, "options", None))
    if getattr(args, "version", None):
        options["version"] = args.version
    if getattr(args, "no_rollback_automation", False):
        options["enable_rollback_automation"] = False
    blue_green = dict(options.get("blue_green") or {})
    if getattr(args, "keep_blue", False):
        blue_green["keep_blue"] = True
    if getattr(args, "skip_tests", False):
        blue_green["skip_tests"] = True
    if blue_green:
        options["blue_green"] = blue_green
    return options


def add_target_arguments(parser, required=True):
    parser.add_argument("--service", required=required)
    parser.add_argument("--namespace")


def build_parser():
    parser = argparse.ArgumentParser(description="Progressive rollout control plane")
    parser.add_argument("--log-level")
    parser.add_argument("--settings", help="JSON settings file")
    parser.add_argument("--backend", choices=["kubernetes", "memory"])
    parser.add_argument("--state", help="Cluster snapshot for the memory backend")
    parser.add_argument("--history", help="Pipeline and rollback history file")
    sub = parser.add_subparsers(dest="cmd", required=True)

    deploy = sub.add_parser("deploy")
    add_target_arguments(deploy)
    deploy.add_argument("--strategy", choices=STRATEGIES, default=Strategy.BLUE_GREEN.value)
    deploy.add_argument("--image", help="Prebuilt artifact; skips the build stage")
    deploy.add_argument("--version")
    deploy.add_argument("--options", help="JSON file of pipeline options")
    deploy.add_argument("--keep-blue", action="store_true")
    deploy.add_argument("--skip-tests", action="store_true")
    deploy.add_argument("--no-rollback-automation", action="store_true")
    deploy.add_argument("--report", help="Write the pipeline report to this file")

    rollback = sub.add_parser("rollback")
    add_target_arguments(rollback)
    rollback.add_argument("--method", choices=["auto-detect"] + STRATEGIES, default="auto-detect")

    promote = sub.add_parser("promote")
    promote.add_argument("--service", required=True)
    promote.add_argument("--from", dest="source_env", required=True)
    promote.add_argument("--to", dest="target_env", required=True)
    promote.add_argument("--strategy", choices=STRATEGIES, default=Strategy.BLUE_GREEN.value)
    promote.add_argument("--options", help="JSON file of pipeline options")

    optimize = sub.add_parser("optimize")
    add_target_arguments(optimize)

    status = sub.add_parser("status")
    add_target_arguments(status, required=False)
    status.add_argument("--limit", type=int, default=10)

    monitor = sub.add_parser("monitor")
    add_target_arguments(monitor)
    monitor.add_argument("--strategy", choices=STRATEGIES)
    monitor.add_argument("--duration", type=float, default=300.0, help="Seconds to supervise before exiting")
    monitor.add_argument("--options", help="JSON file with rollback settings")
    return parser


async def run_command(args, control_plane, settings):
    namespace = getattr(args, "namespace", None) or settings.namespace
    service = getattr(args, "service", None)
    target = DeploymentTarget(service, namespace) if service else None
    orchestrator = control_plane.orchestrator

    if args.cmd == "deploy":
        result = await control_plane.deploy(target, args.image, args.strategy, pipeline_options(args))
        if args.report and result.run is not None:
            with open(args.report, "w") as f:
                json.dump(orchestrator.generate_pipeline_report(result.run), f, indent=2, default=str)
        return result

    if args.cmd == "rollback":
        return await control_plane.rollback(target, args.method)

    if args.cmd == "promote":
        options = pipeline_options(args)
        options["deployment_strategy"] = args.strategy
        return await control_plane.promote(DeploymentTarget(service, settings.namespace), args.source_env,
                                           args.target_env, options)

    if args.cmd == "optimize":
        return await control_plane.optimize(target)

    if args.cmd == "status":
        return await control_plane.status(target, args.limit)

    if args.cmd == "monitor":
        result = await control_plane.enable_auto_rollback(target, load_pipeline_overrides(args.options),
                                                          args.strategy)
        if not result.success:
            return result
        await asyncio.sleep(args.duration)
        result.detail["rollbacks"] = [asdict(r) for r in orchestrator.get_rollback_history(service)]
        await control_plane.disable_auto_rollback(target)
        return result

    raise ValueError(f"Unknown command: {args.cmd}")


def main(argv=None):
    args = build_parser().parse_args(argv)
    try:
        settings = load_settings(args.settings)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    if args.backend:
        settings.backend = args.backend
    setup_logging(args.log_level or settings.log_level)

    try:
        control_plane, gateway = build_control_plane(settings, args.state)
        load_history(args.history, control_plane.orchestrator)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    async def run():
        try:
            return await run_command(args, control_plane, settings)
        finally:
            await control_plane.rollback_manager.shutdown()

    result = asyncio.run(run())
    print(json.dumps(asdict(result), indent=2, default=str))

    if args.state and isinstance(gateway, InMemoryClusterGateway):
        save_state(args.state, gateway)
    if args.history:
        save_history(args.history, control_plane.orchestrator)
    if not result.success:
        sys.exit(1)


if __name__ == "__main__":
    main()
