"""CLI entry point: python main.py deploy --version 1.4.2 --image <registry>/webapp:1.4.2"""

import argparse
import json
import sys

from src.audit import AuditConfig, AuditRecorder
from src.deployment import (
    DeploymentCancelledError,
    DeploymentConfig,
    DeploymentController,
    DeploymentError,
    DeploymentValidator,
    EnvironmentRegistry,
    SqlStateStore,
)
from src.deployment.aws import build_aws_platform
from src.logging_config import LogFormat, LoggingConfig, LogLevel, configure_logging
from src.settings import get_settings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Blue-green deployment orchestrator"
    )
    parser.add_argument(
        "--db-url", default=None,
        help="State database URL (default: BLUEGREEN_STATE_DB_URL)"
    )
    parser.add_argument(
        "--audit-log", default=None,
        help="Mirror the audit trail to this JSON Lines file"
    )
    parser.add_argument(
        "--verbose", action="store_true",
        help="Console logging at DEBUG level"
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("status", help="Show the active environment and recent deployments")

    deploy = commands.add_parser("deploy", help="Deploy an artifact to the staging environment")
    deploy.add_argument("--version", required=True, help="Artifact version, e.g. 1.4.2")
    deploy.add_argument("--image", required=True, help="Container image pull reference")
    deploy.add_argument("--by", default="cli", help="Operator name recorded on the deployment")

    rollback = commands.add_parser("rollback", help="Restore the previous environment")
    rollback.add_argument("--deployment-id", default=None, help="Deployment to roll back (default: latest)")
    rollback.add_argument("--reason", default="manual rollback", help="Reason recorded in the audit trail")

    commands.add_parser("resume", help="Continue a deployment interrupted by a crash")

    # A running deploy is interrupted with Ctrl-C; its state stays persisted
    abort = commands.add_parser("abort", help="Roll back a deployment interrupted mid-flight")
    abort.add_argument("--reason", default="operator abort", help="Reason recorded in the audit trail")
    return parser


def build_controller(settings, db_url=None, audit_log=None, infrastructure=None, router=None, target_groups=None):
    """Wire the controller and its collaborators from settings."""
    if infrastructure is None or router is None:
        infrastructure, router, target_groups = build_aws_platform(settings)

    store = SqlStateStore(app_name=settings.app_name, url=db_url or settings.state_db_url)
    registry = EnvironmentRegistry(router, store, target_groups=target_groups)

    validator = DeploymentValidator()
    validator.add_check(
        "healthy_instances",
        "availability",
        lambda env: infrastructure.health(env.instance_pool_ref).healthy_count,
        threshold=settings.desired_capacity,
    )

    return DeploymentController(
        registry,
        infrastructure,
        validator,
        store,
        audit=AuditRecorder(AuditConfig(log_path=audit_log)),
        config=DeploymentConfig.from_settings(settings),
    )


def run_command(args, controller: DeploymentController) -> int:
    """Execute one parsed command; return the process exit code."""
    if args.command == "status":
        summary = controller.get_summary()
        print("=" * 60)
        print(f"ACTIVE ENVIRONMENT: {summary['active'] or 'not initialized'}")
        print(f"Controller state:   {summary['state']}")
        print(f"Deployments:        {summary['total']} "
              f"({summary['completed']} completed, {summary['rolled_back']} rolled back, "
              f"{summary['failed']} failed)")
        print("=" * 60)
        for d in controller.history(limit=10):
            print(f"  {d.deployment_id}  {d.artifact_version:12s}  {d.state.value:12s}  "
                  f"{d.target_environment.value if d.target_environment else '-'}")
        if controller.registry.is_initialized:
            routed = controller.registry.routed_target()
            if routed is not None:
                print(f"Listener target:    {routed}")
            print("\n" + json.dumps(controller.registry.snapshot(), indent=2))
        return 0

    try:
        if args.command == "deploy":
            print(f"Deploying {args.version} ({args.image})...")
            try:
                deployment = controller.deploy(args.version, args.image, deployed_by=args.by)
            except KeyboardInterrupt:
                print("Interrupted; run 'abort' to roll back or 'resume' to continue",
                      file=sys.stderr)
                return 130
            print(f"Deployment {deployment.deployment_id} {deployment.state.value}; "
                  f"{controller.registry.active_label.value} is live")
        elif args.command == "rollback":
            action = controller.rollback(args.deployment_id, reason=args.reason)
            if action.already_rolled_back:
                print(f"Deployment {action.deployment_id} was already rolled back")
            else:
                print(f"Rolled back {action.deployment_id}: "
                      f"{action.to_environment} is live (swapped={action.swapped})")
        elif args.command == "resume":
            deployment = controller.resume()
            if deployment is None:
                print("Nothing to resume")
            else:
                print(f"Deployment {deployment.deployment_id} {deployment.state.value}")
        elif args.command == "abort":
            try:
                deployment = controller.resume(abort_reason=args.reason)
            except DeploymentCancelledError:
                deployment = controller.history(limit=1)[0]
            if deployment is None:
                print("Nothing to abort")
            else:
                print(f"Deployment {deployment.deployment_id} {deployment.state.value}; "
                      f"{controller.registry.active_label.value} is live")
    except DeploymentError as exc:
        print(f"ERROR [{exc.error_code}]: {exc.message}", file=sys.stderr)
        return 1
    except KeyError as exc:
        print(f"ERROR: {exc.args[0]}", file=sys.stderr)
        return 1
    return 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()

    if args.verbose:
        configure_logging(LoggingConfig(level=LogLevel.DEBUG, format=LogFormat.CONSOLE))
    else:
        configure_logging(LoggingConfig(
            level=LogLevel(settings.log_level.upper()),
            format=LogFormat(settings.log_format.lower()),
            service_name=f"bluegreen-{settings.app_name}",
        ))

    controller = build_controller(settings, db_url=args.db_url, audit_log=args.audit_log)
    return run_command(args, controller)


if __name__ == "__main__":
    sys.exit(main())
