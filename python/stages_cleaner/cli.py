#!/usr/bin/env python3
"""
Safely cleanup unused project images and stages.

The first phase deletes images from the images repo that no retention
policy keeps and nothing in the cluster runs. The second phase deletes
stages from the stages storage that no surviving image depends on.

It is safe to run periodically (daily is enough) from an automated job in
parallel with builds and deploys of the same project: both take the same
project lock.

Usage examples:
  # See what would be deleted
  python main.py cleanup --stages-storage :local --images-repo registry.example.com/myproject --dry-run

  # Clean up with custom policies
  python main.py cleanup --stages-storage registry.example.com/myproject/stages \\
      --images-repo registry.example.com/myproject \\
      --images-cleanup-policies 'git-branch:*;git-tag:*:keep=10:expire=30d;git-commit:*:keep=50:expire=30d'

  # Policies from a YAML file, no cluster protection
  python main.py cleanup --stages-storage :local --images-repo registry.example.com/myproject \\
      --images-cleanup-policies policies.yaml --without-kube
"""

import argparse
import os
import signal
import sys
import time
from typing import List, Optional

from cleaner_utils.config_manager import ConfigManager, ConfigValidationError
from cleaner_utils.docker_client import DockerClient
from cleaner_utils.error_utils import ActionableError
from cleaner_utils.lock_manager import LockManager
from cleaner_utils.logging_utils import get_logger, log_banner, log_exception, setup_logging
from cleaner_utils.report_utils import format_table, save_table_and_json
from cleaner_utils.skopeo_client import SkopeoClient
from stages_cleaner.coordinator import CleanupCoordinator
from stages_cleaner.git_refs import GitReferenceResolver
from stages_cleaner.live_workloads import LiveWorkloadScanner
from stages_cleaner.models import CleanupReport, CleanupRunOptions
from stages_cleaner.policies import load_policies
from stages_cleaner.project_config import load_project_config
from stages_cleaner.storage import LOCAL_STAGES_STORAGE, RegistryImagesRepo, create_stages_storage

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INTERRUPTED = 130


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        prog="registry-stages-cleaner",
        description="Policy-driven cleanup of published images and cached build stages",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    cleanup = subparsers.add_parser(
        "cleanup",
        help="Safely cleanup unused project images and stages",
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    cleanup.add_argument(
        "--stages-storage",
        required=True,
        help=f"Stages storage: '{LOCAL_STAGES_STORAGE}' for the local docker daemon, or a registry repo",
    )
    cleanup.add_argument("--images-repo", required=True, help="Images repo prefix (image NAME lives at IMAGES_REPO/NAME)")
    cleanup.add_argument(
        "--docker-config",
        help="Docker config dir or auth file with permissions to read, pull and delete from both repos "
        "(default: DOCKER_CONFIG or config.yaml)",
    )
    cleanup.add_argument("--insecure-repo", action="store_true", help="Allow plain HTTP and unverified TLS registries")
    cleanup.add_argument(
        "--images-cleanup-policies",
        help="YAML file, or 'scheme:pattern[:keep=N][:expire=DUR];...' (default: cleanup.policies from config.yaml)",
    )
    cleanup.add_argument("--kube-config", help="Kubernetes config file (default: KUBECONFIG or ~/.kube/config)")
    cleanup.add_argument("--kube-context", help="Kubernetes context (default: current context)")
    cleanup.add_argument("--dry-run", action="store_true", help="Report what would be deleted without deleting")
    cleanup.add_argument(
        "--without-kube", action="store_true", help="Do not protect images running in kubernetes from deletion"
    )
    cleanup.add_argument("--dir", default=os.getcwd(), help="Project directory with werf.yaml (default: current dir)")
    cleanup.add_argument("--config", help="Path to config.yaml (default: CONFIG_FILE or ./config.yaml)")

    return parser.parse_args(argv)


def _raise_system_exit(signum, frame):
    logger.warning(f"Received signal {signum}, stopping")
    raise SystemExit(EXIT_INTERRUPTED)


def install_signal_handlers() -> None:
    """Turn SIGTERM into SystemExit so the project lock is released on the way out."""
    signal.signal(signal.SIGTERM, _raise_system_exit)


def build_report_table(report: CleanupReport) -> str:
    rows = []
    if report.images:
        for decision in report.images.decisions:
            tag = decision.tag
            rows.append(
                [
                    tag.image_name or "~",
                    tag.tag,
                    tag.scheme.value,
                    tag.git_ref or "",
                    tag.created_at.strftime("%Y-%m-%d %H:%M"),
                    "keep" if decision.keep else "delete",
                    decision.reason.value,
                ]
            )
    table = format_table(rows, ["Image", "Tag", "Scheme", "Git ref", "Created", "Decision", "Reason"])

    lines = [table, ""]
    if report.stages:
        summary = report.stages.summary()
        lines.append(f"Stages: {summary['deleted']} deleted, {summary['kept']} kept, {summary['failed']} failed")
    for warning in report.warnings:
        lines.append(f"Warning: {warning}")
    for error in report.errors:
        lines.append(f"Error ({error.phase}) {error.item}: {error.error}")
    if report.fatal_error:
        lines.append(f"Fatal: {report.fatal_error}")
    return "\n".join(lines) + "\n"


def build_coordinator(args: argparse.Namespace, cfg: ConfigManager, project_name: str) -> CleanupCoordinator:
    max_workers = cfg.get_max_workers()
    skopeo_client = SkopeoClient(
        cfg, docker_config=args.docker_config, tls_verify=False if args.insecure_repo else None
    )
    docker_client = DockerClient(cfg, docker_config=args.docker_config) if args.stages_storage == LOCAL_STAGES_STORAGE else None

    return CleanupCoordinator(
        images_repo=RegistryImagesRepo(args.images_repo, skopeo_client, max_workers=max_workers),
        stages_storage=create_stages_storage(
            args.stages_storage, project_name, skopeo_client, docker_client, max_workers=max_workers
        ),
        git_resolver=GitReferenceResolver(args.dir, timeout=cfg.get_git_timeout()),
        workload_scanner=LiveWorkloadScanner(
            kube_config=args.kube_config or cfg.get_kube_config(),
            kube_context=args.kube_context or cfg.get_kube_context(),
            all_contexts=cfg.scan_all_kube_contexts() and not args.kube_context,
            max_workers=cfg.get_kube_max_workers(),
        ),
        lock_manager=LockManager(cfg.get_lock_dir()),
        max_workers=max_workers,
        lock_timeout=cfg.get_lock_timeout(),
    )


def run_cleanup(args: argparse.Namespace, cfg: ConfigManager) -> CleanupReport:
    project = load_project_config(args.dir)
    policies = load_policies(args.images_cleanup_policies, cfg.get_cleanup_policies())

    options = CleanupRunOptions(
        project_name=project.project_name,
        images_repo=args.images_repo,
        stages_storage=args.stages_storage,
        image_names=project.image_names,
        policies=policies,
        dry_run=args.dry_run,
        without_kube=args.without_kube,
    )

    log_banner(logger, f"{'🔍 DRY RUN: ' if args.dry_run else '🗑️  '}Cleanup of project {options.project_name}")
    logger.info(f"Images repo: {options.images_repo}")
    logger.info(f"Stages storage: {options.stages_storage}")
    for policy in policies:
        logger.info(f"Policy: {policy.describe()}")

    coordinator = build_coordinator(args, cfg, options.project_name)
    return coordinator.run(options)


def main(argv: Optional[List[str]] = None) -> int:
    """Main function"""
    setup_logging()
    args = parse_arguments(argv)
    install_signal_handlers()
    started = time.monotonic()

    try:
        cfg = ConfigManager(args.config)
        report = run_cleanup(args, cfg)

        if cfg.reports_enabled():
            save_table_and_json(cfg.get_cleanup_report_path(), build_report_table(report), report.to_dict())

        if not report.succeeded:
            logger.error("Cleanup failed")
            logger.error(report.fatal_error)
            return EXIT_FAILED

        images = report.images.summary() if report.images else {}
        stages = report.stages.summary() if report.stages else {}
        verb = "Would delete" if args.dry_run else "Deleted"
        logger.info(f"✅ {verb} {images.get('deleted', 0)} images and {stages.get('deleted', 0)} stages")
        if report.errors:
            logger.warning(f"⚠️  {len(report.errors)} items could not be deleted, see the report")
        return EXIT_OK
    except ConfigValidationError as e:
        logger.error(f"❌ Configuration error: {e}")
        return EXIT_FAILED
    except ActionableError as e:
        logger.error(str(e))
        return EXIT_FAILED
    except KeyboardInterrupt:
        logger.info("\nOperation interrupted by user")
        return EXIT_INTERRUPTED
    except Exception as e:
        log_exception(logger, "Error in main", exc_info=e)
        return EXIT_FAILED
    finally:
        logger.info(f"Running time {time.monotonic() - started:.2f} seconds")


if __name__ == "__main__":
    sys.exit(main())
