#!/usr/bin/env python3
# CUI // SP-CTI
"""Falcon engine command-line interface.

Usage:
    python -m falcon_engine.cli.falcon_cli init-db [--reset]
    python -m falcon_engine.cli.falcon_cli workspace-create --name "Platform"
    python -m falcon_engine.cli.falcon_cli project-create --workspace <ws> --name api \\
        --repo-url git@github.com:org/api.git
    python -m falcon_engine.cli.falcon_cli seed-baselines --workspace <ws>
    python -m falcon_engine.cli.falcon_cli kill-switch status --workspace <ws> --project <pj>
    python -m falcon_engine.cli.falcon_cli maintenance --workspace <ws> [--project <pj>]
    python -m falcon_engine.cli.falcon_cli promote-check --workspace <ws> [--promote]
    python -m falcon_engine.cli.falcon_cli rollback-principle --workspace <ws> --key <promotion_key>
    python -m falcon_engine.cli.falcon_cli select --workspace <ws> --project <pj> \\
        --issue CON-12 --target context-pack --title "Add login endpoint"
    python -m falcon_engine.cli.falcon_cli delete-project --workspace <ws> --project <pj> --yes
    python -m falcon_engine.cli.falcon_cli metrics --workspace <ws> --project <pj> [--json]

Every command accepts --json for machine-readable output. Exit code is 1 on
any engine error.
"""

import argparse
import json
import logging
import sys
from contextlib import closing
from pathlib import Path

from falcon_engine.compat.config import load_config
from falcon_engine.compat.db_utils import get_db_connection, get_falcon_db_path
from falcon_engine.db.init_falcon_db import init_db
from falcon_engine.evolution.promotion_checker import PromotionChecker
from falcon_engine.evolution.scheduler import run_daily_maintenance, run_workspace_maintenance
from falcon_engine.injection.baselines import check_baselines_seeded, seed_baselines
from falcon_engine.injection.formatter import format_injection_for_prompt, format_injection_summary
from falcon_engine.injection.selector import select_warnings_for_injection
from falcon_engine.injection.task_profile import extract_from_issue, normalize_profile
from falcon_engine.metrics.collector import collect_metrics
from falcon_engine.resilience.errors import FalconError
from falcon_engine.resilience.kill_switch import KillSwitchService
from falcon_engine.storage import Repositories, delete_project_cascade

logger = logging.getLogger("falcon.cli.falcon_cli")


def _emit(args, payload, text):
    if args.json:
        print(json.dumps(payload, indent=2, default=str))
    else:
        print(text)


def _require_project(repos, workspace_id, project_id):
    project = repos.projects.find_by_id(workspace_id, project_id)
    if project is None:
        raise FalconError(f"Project {project_id} not found in workspace {workspace_id}")
    return project


# ── Command handlers ────────────────────────────────────────────────────

def cmd_init_db(args, config):
    path = get_falcon_db_path(args.db)
    if args.reset and path.exists():
        path.unlink()
    tables = init_db(path)
    _emit(args, {"db_path": str(path), "tables": tables},
          f"Falcon database initialized at {path} ({len(tables)} tables)")


def cmd_workspace_create(args, config):
    with closing(get_db_connection(args.db, validate=True)) as conn:
        ws = Repositories(conn).workspaces.create(args.name, slug=args.slug)
        seeded = seed_baselines(conn, ws.id) if not args.no_baselines else 0
    _emit(args, {"workspace": ws.to_dict(), "baselines_seeded": seeded},
          f"Workspace {ws.slug} created: {ws.id} ({seeded} baselines seeded)")


def cmd_project_create(args, config):
    with closing(get_db_connection(args.db, validate=True)) as conn:
        project = Repositories(conn).projects.create(
            args.workspace, args.name, args.repo_url,
            repo_subdir=args.subdir or "", repo_path=args.repo_path,
        )
    _emit(args, project.to_dict(), f"Project {project.name} created: {project.id}")


def cmd_seed_baselines(args, config):
    with closing(get_db_connection(args.db, validate=True)) as conn:
        added = seed_baselines(conn, args.workspace)
        status = check_baselines_seeded(conn, args.workspace)
    _emit(args, {"added": added, **status},
          f"Seeded {added} baselines ({status['seeded']}/{status['expected']} present)")


def cmd_kill_switch(args, config):
    with closing(get_db_connection(args.db, validate=True)) as conn:
        _require_project(Repositories(conn), args.workspace, args.project)
        service = KillSwitchService(conn, config)
        if args.action == "pause":
            status = service.pause(args.workspace, args.project, reason=args.reason or "Manual pause")
        elif args.action == "pause-inferred":
            status = service.pause_inferred(
                args.workspace, args.project,
                reason=args.reason or "Manual pause of inferred patterns")
        elif args.action == "resume":
            status = service.resume(args.workspace, args.project, reason=args.reason or "Manual resume")
        elif args.action == "evaluate":
            evaluation = service.evaluate_health(args.workspace, args.project)
            _emit(args, evaluation.to_dict(),
                  f"State: {evaluation.state}"
                  + (f" (changed from {evaluation.previous_state}: {evaluation.reason})"
                     if evaluation.changed else " (unchanged)"))
            return
        else:
            status = service.get_status(args.workspace, args.project)
            metrics = service.get_health_metrics(args.workspace, args.project)
            _emit(args, {"status": status.to_dict(), "metrics": metrics.to_dict()},
                  f"State: {status.state}\n"
                  f"  Reason: {status.reason or '-'}\n"
                  f"  Auto-resume at: {status.auto_resume_at or '-'}\n"
                  f"  Attributions (window): {metrics.total_attributions}\n"
                  f"  Precision: {metrics.attribution_precision_score:.2f}  "
                  f"Inferred ratio: {metrics.inferred_ratio:.2f}  "
                  f"Improvement: {metrics.observed_improvement_rate:.2f}")
            return
    _emit(args, status.to_dict(), f"State: {status.state} ({status.reason})")


def cmd_maintenance(args, config):
    with closing(get_db_connection(args.db, validate=True)) as conn:
        if args.project:
            _require_project(Repositories(conn), args.workspace, args.project)
            results = {args.project: run_daily_maintenance(
                conn, args.workspace, args.project, config=config)}
        else:
            results = run_workspace_maintenance(conn, args.workspace, config=config)
    lines = []
    for project_id, r in results.items():
        lines.append(
            f"{project_id}: archived {r['decay']['archived_patterns']}, "
            f"alerts expired {r['alerts']['expired']} / promoted {r['alerts']['promoted']}, "
            f"salience new {r['salience']['new_issues']}, "
            f"resumed {r['kill_switch']['resumed']} ({r['duration_ms']}ms)"
        )
    _emit(args, results, "\n".join(lines) or "No active projects")


def cmd_promote_check(args, config):
    with closing(get_db_connection(args.db, validate=True)) as conn:
        checker = PromotionChecker(conn, config)
        if args.promote:
            results = [r.to_dict() for r in checker.promote_workspace(args.workspace)]
            text = "\n".join(
                f"{'PROMOTED' if r['promoted'] else 'skipped'}: {r['reason']}" for r in results)
        else:
            results = checker.check_workspace(args.workspace)
            text = "\n".join(
                f"{r['pattern_key'][:12]}... projects={r['project_count']} "
                f"qualifies={r['result']['qualifies']}" for r in results)
    _emit(args, results, text or "No promotion candidates")


def cmd_rollback_principle(args, config):
    with closing(get_db_connection(args.db, validate=True)) as conn:
        archived = PromotionChecker(conn, config).rollback(
            args.workspace, args.key, archived_by=args.by)
    if archived is None:
        raise FalconError(f"No active principle for promotion key {args.key}")
    _emit(args, archived.to_dict(), f"Rolled back principle {archived.id}")


def cmd_select(args, config):
    if args.profile:
        profile = normalize_profile(json.loads(Path(args.profile).read_text(encoding="utf-8")))
    else:
        profile = extract_from_issue(args.title or "", args.description or "", args.label)
    with closing(get_db_connection(args.db, validate=True)) as conn:
        result = select_warnings_for_injection(
            conn, args.workspace, args.project, args.target, profile, args.issue,
            max_warnings=args.max_warnings,
            cross_project=True if args.cross_project else None,
            config=config,
        )
    if args.json:
        payload = result.to_dict()
        payload["markdown"] = format_injection_for_prompt(result)
        payload["summary"] = format_injection_summary(result)
        print(json.dumps(payload, indent=2, default=str))
        return
    print(format_injection_for_prompt(result), end="")
    print(format_injection_summary(result), file=sys.stderr)


def cmd_delete_project(args, config):
    if not args.yes:
        raise FalconError("Refusing to delete without --yes")
    with closing(get_db_connection(args.db, validate=True)) as conn:
        counts = delete_project_cascade(conn, args.workspace, args.project)
    _emit(args, counts, f"Deleted project {args.project}: "
          + ", ".join(f"{t}={n}" for t, n in counts.items() if n))


def _pairs(counts):
    return " ".join(f"{k}={v}" for k, v in counts.items())


def cmd_metrics(args, config):
    with closing(get_db_connection(args.db, validate=True)) as conn:
        _require_project(Repositories(conn), args.workspace, args.project)
        snapshot = collect_metrics(conn, args.workspace, args.project, config=config)
    p, inj, h = snapshot.patterns, snapshot.injections, snapshot.health
    lines = [
        f"Patterns: {p['total']} ({_pairs(p['by_status'])})",
        f"  Active by quote type: {_pairs(p['by_quote_type'])}",
        f"Occurrences: {snapshot.occurrences['total']} (active {snapshot.occurrences['active']})",
        f"Injections: {inj['total']} ({_pairs(inj['by_target'])}), "
        f"avg warnings {inj['avg_warnings_per_injection']:.2f}",
        f"Principles: {_pairs(snapshot.principles)}",
        f"Kill switch: {h['kill_switch_state']}  "
        f"precision {h['attribution_precision_score']:.2f}  "
        f"inferred {h['inferred_ratio']:.2f}  "
        f"improvement {h['observed_improvement_rate']:.2f}",
    ]
    _emit(args, snapshot.to_dict(), "\n".join(lines))


# ── Parser ──────────────────────────────────────────────────────────────

def build_parser():
    parser = argparse.ArgumentParser(
        prog="falcon-engine",
        description="Falcon attribution and pattern-lifecycle engine",
    )
    parser.add_argument("--db", type=str, default=None, help="Database path")
    parser.add_argument("--config", type=str, default=None, help="Policy YAML path")
    parser.add_argument("--json", action="store_true", help="JSON output")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init-db", help="Create the database schema")
    p.add_argument("--reset", action="store_true", help="Delete the existing database first")
    p.set_defaults(func=cmd_init_db)

    p = sub.add_parser("workspace-create", help="Create a workspace and seed baselines")
    p.add_argument("--name", required=True)
    p.add_argument("--slug")
    p.add_argument("--no-baselines", action="store_true", help="Skip baseline seeding")
    p.set_defaults(func=cmd_workspace_create)

    p = sub.add_parser("project-create", help="Register a project in a workspace")
    p.add_argument("--workspace", required=True)
    p.add_argument("--name", required=True)
    p.add_argument("--repo-url", required=True, help="Repository origin URL")
    p.add_argument("--subdir", help="Subdirectory within the repository")
    p.add_argument("--repo-path", help="Local checkout path")
    p.set_defaults(func=cmd_project_create)

    p = sub.add_parser("seed-baselines", help="Seed the eleven baseline principles")
    p.add_argument("--workspace", required=True)
    p.set_defaults(func=cmd_seed_baselines)

    p = sub.add_parser("kill-switch", help="Inspect or control the pattern-creation kill switch")
    p.add_argument("action", choices=["status", "pause", "pause-inferred", "resume", "evaluate"])
    p.add_argument("--workspace", required=True)
    p.add_argument("--project", required=True)
    p.add_argument("--reason")
    p.set_defaults(func=cmd_kill_switch)

    p = sub.add_parser("maintenance", help="Run daily maintenance")
    p.add_argument("--workspace", required=True)
    p.add_argument("--project", help="Single project (default: every active project)")
    p.set_defaults(func=cmd_maintenance)

    p = sub.add_parser("promote-check", help="Check workspace patterns for principle promotion")
    p.add_argument("--workspace", required=True)
    p.add_argument("--promote", action="store_true", help="Promote qualifying patterns")
    p.set_defaults(func=cmd_promote_check)

    p = sub.add_parser("rollback-principle", help="Archive a promoted principle by promotion key")
    p.add_argument("--workspace", required=True)
    p.add_argument("--key", required=True, help="Promotion key")
    p.add_argument("--by", help="Who is rolling back")
    p.set_defaults(func=cmd_rollback_principle)

    p = sub.add_parser("select", help="Select and print warnings for a task")
    p.add_argument("--workspace", required=True)
    p.add_argument("--project", required=True)
    p.add_argument("--issue", required=True, help="Issue ID")
    p.add_argument("--target", required=True, choices=["context-pack", "spec"])
    p.add_argument("--title")
    p.add_argument("--description")
    p.add_argument("--label", action="append", default=[])
    p.add_argument("--profile", help="TaskProfile JSON file (overrides extraction)")
    p.add_argument("--max-warnings", type=int)
    p.add_argument("--cross-project", action="store_true")
    p.set_defaults(func=cmd_select)

    p = sub.add_parser("delete-project", help="Delete a project and all of its rows")
    p.add_argument("--workspace", required=True)
    p.add_argument("--project", required=True)
    p.add_argument("--yes", action="store_true", help="Confirm deletion")
    p.set_defaults(func=cmd_delete_project)

    p = sub.add_parser("metrics", help="Pattern, injection and health metrics for a project")
    p.add_argument("--workspace", required=True)
    p.add_argument("--project", required=True)
    p.add_argument("--json", action="store_true", default=argparse.SUPPRESS,
                   help="JSON output (same as the global flag)")
    p.set_defaults(func=cmd_metrics)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        config = load_config(args.config)
        args.func(args, config)
    except (FalconError, FileNotFoundError) as exc:
        if args.json:
            print(json.dumps({"error": str(exc)}))
        else:
            print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
