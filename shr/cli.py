from __future__ import annotations

import argparse
import json
import os
import sys
import threading

from .api import create_app, project_status
from .errors import ShrError, ValidationError
from .health import HealthProbe, HealthScheduler
from .reconciler import ApplyResult, BatchResult, Reconciler
from .settings import load_settings


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def log(msg: str) -> None:
    print(f"[shr] {msg}")


def warn(msg: str) -> None:
    print(f"[shr][warn] {msg}", file=sys.stderr)


def err(msg: str) -> None:
    print(f"[shr][error] {msg}", file=sys.stderr)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="shr", description="Single-Host Reconciler: identities, systemd units and nginx sites per project"
    )
    p.add_argument("--config", default=None, help="Config file (default: /etc/shr/shr.conf)")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("list", help="List projects")

    s_render = sub.add_parser("render", help="Show desired state (dry run)")
    s_render.add_argument("name", nargs="?")

    s_apply = sub.add_parser("apply", help="Apply config(s): users, systemd, nginx")
    s_apply.add_argument("name", nargs="?")

    s_add = sub.add_parser("add-project", help="Create a project descriptor and apply it")
    s_add.add_argument("--name", required=True)
    s_add.add_argument("--domain", required=True)
    s_add.add_argument("--port", type=int, required=True)
    s_add.add_argument("--user")
    s_add.add_argument("--exec", dest="exec_path")
    s_add.add_argument("--enable", action="store_true")

    s_rm = sub.add_parser("remove-project", help="Remove a project's units and sites")
    s_rm.add_argument("--name", required=True)
    s_rm.add_argument("--purge", action="store_true", help="Also delete app/log data and the system user")
    s_rm.add_argument("--yes", action="store_true", help="Confirm --purge without prompting")

    s_pause = sub.add_parser("pause-project", help="Switch site to maintenance")
    s_pause.add_argument("--name", required=True)

    s_resume = sub.add_parser("resume-project", help="Restore normal site")
    s_resume.add_argument("--name", required=True)

    s_env = sub.add_parser("create-env", help="Create env file with secure perms")
    s_env.add_argument("--name", required=True)

    s_user = sub.add_parser("add-user", help="Create a system user for a project")
    s_user.add_argument("--name", required=True)
    s_user.add_argument("--home")

    s_status = sub.add_parser("status", help="Show live status and recent events")
    s_status.add_argument("name", nargs="?")
    s_status.add_argument("--limit", type=int, default=10)

    s_probe = sub.add_parser("probe", help="Run one health probe (used by the health timer)")
    s_probe.add_argument("--name", required=True)

    sub.add_parser("watch", help="Run health probes in-process until interrupted")
    sub.add_parser("serve", help="Serve the read-only status API")
    return p


def _report(batch: BatchResult) -> int:
    for r in batch.results:
        _report_one(r)
    for name, e in batch.failures.items():
        err(f"{e}" if e.project else f"[{name}] {e}")
    if batch.reload_error:
        err(f"nginx reload failed: {batch.reload_error}")
    return 0 if batch.ok else 1


def _report_one(r: ApplyResult) -> None:
    log(f"{r.project}: {r.mode.value} ({len(r.changed)} changed)")
    for w in r.warnings:
        warn(f"{r.project}: {w}")


def _confirm_purge(name: str, assume_yes: bool) -> bool:
    if assume_yes:
        return True
    if not sys.stdin.isatty():
        return False
    answer = input(f"Purge deletes all data and the system user of '{name}'. Type the project name to confirm: ")
    return answer.strip() == name


def main(argv: list[str] | None = None, reconciler: Reconciler | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        rec = reconciler or Reconciler(load_settings(args.config))
        return _dispatch(args, rec)
    except ShrError as e:
        err(str(e))
        return 1


def _dispatch(args: argparse.Namespace, rec: Reconciler) -> int:
    store = rec.store

    if args.cmd == "list":
        descriptors, failures = store.scan()
        for d in descriptors:
            mode = rec.sites(d.name).current().value
            print(f"{d.name} {'yes' if d.enabled else 'no'} {d.domain or '-'}:{d.port or '-'} {mode}")
        for name, e in failures.items():
            warn(f"skipping {name}: {e.message}")
        return 0

    if args.cmd == "render":
        descriptors = [store.load(args.name)] if args.name else store.list()
        if not descriptors:
            err("No project configs")
            return 1
        _print([rec.render(d) for d in descriptors])
        return 0

    if args.cmd == "apply":
        if not args.name and not store.names():
            err("No project configs")
            return 1
        return _report(rec.apply_all([args.name] if args.name else None))

    if args.cmd == "add-project":
        result = rec.add_project(
            name=args.name,
            domain=args.domain,
            port=args.port,
            user=args.user,
            exec_path=args.exec_path,
            enable=args.enable,
        )
        log(f"Project config created: {store.path(args.name)}")
        _report_one(result)
        return 0

    if args.cmd == "remove-project":
        if args.purge and not _confirm_purge(args.name, args.yes):
            err("--purge deletes data; pass --yes or confirm interactively")
            return 1
        rec.remove(args.name, purge=args.purge)
        log(f"Project {args.name} removed{' (purged)' if args.purge else ''}")
        return 0

    if args.cmd == "pause-project":
        rec.pause(args.name)
        log(f"Maintenance enabled for {args.name}")
        return 0

    if args.cmd == "resume-project":
        rec.resume(args.name)
        log(f"Maintenance disabled for {args.name}")
        return 0

    if args.cmd == "create-env":
        print(rec.create_env(args.name, owner=os.environ.get("SUDO_USER")))
        return 0

    if args.cmd == "add-user":
        if rec.add_user(args.name, args.home):
            log(f"User {args.name} created")
        else:
            log(f"User {args.name} already exists")
        return 0

    if args.cmd == "status":
        descriptors = [store.load(args.name)] if args.name else store.list()
        _print(
            {
                "projects": [project_status(rec, d).model_dump() for d in descriptors],
                "events": rec.journal.latest_events(args.limit, args.name),
            }
        )
        return 0

    if args.cmd == "probe":
        outcome = HealthProbe(rec).run(store.load(args.name))
        if outcome.skipped:
            log(f"{args.name}: probe skipped ({outcome.message})")
            return 0
        if outcome.healthy:
            log(f"{args.name}: healthy after {outcome.attempts} attempt(s)")
            return 0
        warn(f"{args.name}: {outcome.message}")
        return 0 if outcome.restarted else 1

    if args.cmd == "watch":
        scheduler = HealthScheduler(rec)
        names = scheduler.start()
        if not names:
            err("No enabled projects with a health check")
            return 1
        log(f"Watching {', '.join(names)}")
        try:
            threading.Event().wait()
        except KeyboardInterrupt:
            pass
        finally:
            scheduler.stop(timeout=5)
        return 0

    if args.cmd == "serve":
        import uvicorn

        uvicorn.run(create_app(rec), host=rec.settings.api_host, port=rec.settings.api_port)
        return 0

    raise ValidationError(f"unknown command {args.cmd}")


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
