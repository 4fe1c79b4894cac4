#!/usr/bin/env python3
"""
DockPilot command-line tool

Registers stacks and services, runs check cycles and update jobs.

    python cli.py add-stack media -f /opt/media/compose.yml
    python cli.py add-service 1 jellyfin jellyfin/jellyfin:10.8.13
    python cli.py ignore 1 semver ">=11.0.0" --note "wait for plugins"
    python cli.py check --stack 1
    python cli.py update --service 1 --dry-run
"""

import argparse
import asyncio
import json
import logging
import sys

from config.settings import AppSettings, setup_logging
from database import DatabaseManager
from updates import UpdateChecker, UpdateExecutor, UpdateJob, UpdateJobRunner, UpdateMode, UpdateScope
from updates.ignore_rules import IgnoreKind
from updates.registry_adapter import RegistryAdapter
from updates.update_executor import UpdateValidationError
from utils.command_runner import SubprocessCommandRunner
from utils.registry_credentials import DockerConfigCredentials

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="DockPilot update tool")
    sub = parser.add_subparsers(dest="command", required=True)

    add_stack = sub.add_parser("add-stack", help="Register a compose stack")
    add_stack.add_argument("name")
    add_stack.add_argument("--file", "-f", dest="files", action="append", required=True,
                           help="Compose file (repeatable)")
    add_stack.add_argument("--project-name", "-p", help="Compose project name (default: stack name)")
    add_stack.add_argument("--env-file", help="Compose env file")

    add_service = sub.add_parser("add-service", help="Register a service of a stack")
    add_service.add_argument("stack_id", type=int)
    add_service.add_argument("name")
    add_service.add_argument("image", help="Image reference as written in the compose file")
    add_service.add_argument("--no-auto-rollback", action="store_true",
                             help="Leave a failed service as is instead of rolling back")

    ignore = sub.add_parser("ignore", help="Add an ignore rule for a service")
    ignore.add_argument("service_id", type=int)
    ignore.add_argument("kind", choices=[k.value for k in IgnoreKind])
    ignore.add_argument("value")
    ignore.add_argument("--note")

    check = sub.add_parser("check", help="Look for newer images")
    _add_scope_arguments(check)

    update = sub.add_parser("update", help="Apply available updates")
    _add_scope_arguments(update)
    update.add_argument("--dry-run", action="store_true", help="Report what would change, touch nothing")
    update.add_argument("--tag", help="Explicit target tag (service scope)")
    update.add_argument("--digest", help="Explicit target digest (service scope)")
    update.add_argument("--allow-arch-mismatch", action="store_true",
                        help="Update even when the target lacks this host's platform")

    return parser


def _add_scope_arguments(parser: argparse.ArgumentParser):
    scope = parser.add_mutually_exclusive_group()
    scope.add_argument("--stack", type=int, help="Stack id")
    scope.add_argument("--service", type=int, help="Service id")


def _scope(args) -> UpdateScope:
    if args.service is not None:
        return UpdateScope.SERVICE
    if args.stack is not None:
        return UpdateScope.STACK
    return UpdateScope.ALL


def _print(result) -> None:
    print(json.dumps(result, indent=2, default=str))


async def run_check(args, settings: AppSettings, db: DatabaseManager) -> dict:
    registry = RegistryAdapter(credentials=DockerConfigCredentials.load(settings.docker_config_path))
    checker = UpdateChecker(db, registry, settings.host_platform)
    return await checker.check(_scope(args), stack_id=args.stack, service_id=args.service)


async def run_update(args, settings: AppSettings, db: DatabaseManager) -> dict:
    scope = _scope(args)
    if (args.tag or args.digest) and scope != UpdateScope.SERVICE:
        raise UpdateValidationError("--tag/--digest require --service")

    executor = UpdateExecutor(
        SubprocessCommandRunner(),
        compose_bin=settings.compose_bin,
        docker_bin=settings.docker_bin,
        env=settings.command_env(),
    )
    registry = RegistryAdapter(credentials=DockerConfigCredentials.load(settings.docker_config_path))
    runner = UpdateJobRunner(db, executor, registry=registry, host_platform=settings.host_platform)

    job = UpdateJob(
        scope=scope,
        mode=UpdateMode.DRY_RUN if args.dry_run else UpdateMode.APPLY,
        stack_id=args.stack,
        service_id=args.service,
        target_tag=args.tag,
        target_digest=args.digest,
        allow_arch_mismatch=args.allow_arch_mismatch,
    )
    return await runner.run(job)


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    settings = AppSettings.from_env()
    setup_logging(settings.log_level, 'cli.log')

    db = DatabaseManager(settings.database_url)

    if args.command == "add-stack":
        stack_id = db.add_stack(args.name, args.files, project_name=args.project_name, env_file=args.env_file)
        print(f"Stack '{args.name}' registered with id {stack_id}")
        return 0

    if args.command == "add-service":
        if db.get_stack_target(args.stack_id) is None:
            print(f"Error: Stack {args.stack_id} not found.")
            return 1
        service_id = db.add_service(args.stack_id, args.name, args.image, auto_rollback=not args.no_auto_rollback)
        print(f"Service '{args.name}' registered with id {service_id}")
        return 0

    if args.command == "ignore":
        if db.get_service_stack_id(args.service_id) is None:
            print(f"Error: Service {args.service_id} not found.")
            return 1
        rule_id = db.add_ignore_rule(args.service_id, args.kind, args.value, note=args.note)
        print(f"Ignore rule {rule_id} added")
        return 0

    try:
        if args.command == "check":
            result = asyncio.run(run_check(args, settings, db))
        else:
            result = asyncio.run(run_update(args, settings, db))
    except (ValueError, UpdateValidationError) as e:
        print(f"Error: {e}")
        return 1

    _print(result)
    if args.command == "update" and result.get("status") != "success":
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
