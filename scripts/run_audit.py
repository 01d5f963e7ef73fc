#!/usr/bin/env python3
"""Start (or resume) a forensic audit job and poll it until it is terminal.

The last job id is kept in ``--state-file`` so an interrupted poller resumes the
same job instead of starting a new one. Use a persistent store backend
(``AUDIT_STORE_BACKEND=sqlite`` or ``postgres``) when seeding and running from
separate processes.

Usage:
    python scripts/run_audit.py --collection-id dataroom-1
    python scripts/run_audit.py --job-id audit_0123abcd
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from audit_runner.job_controller import create_controller_from_env
from audit_runner.poller import create_poller_from_env, resolve_resumable_job_id


def _read_state(path: Path) -> dict[str, str]:
    if not path.exists():
        return {}
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return {}
    return payload if isinstance(payload, dict) else {}


def _write_state(path: Path, state: dict[str, str]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(state, ensure_ascii=True, indent=2), encoding="utf-8")


def main() -> int:
    parser = argparse.ArgumentParser(description="Run a forensic audit job to completion.")
    parser.add_argument("--collection-id", default="", help="Collection (dataroom) to audit.")
    parser.add_argument("--job-id", default="", help="Resume this job instead of starting one.")
    parser.add_argument(
        "--state-file",
        default=".local/audit-poller-state.json",
        help="Where the last job id per collection is remembered.",
    )
    parser.add_argument("--max-files", type=int, default=0, help="Files per run() call (0 means default).")
    parser.add_argument(
        "--max-invocations",
        type=int,
        default=0,
        help="Stop polling after N run() calls (0 means until terminal).",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not args.collection_id and not args.job_id:
        parser.error("one of --collection-id or --job-id is required")

    controller = create_controller_from_env()
    state_path = Path(args.state_file)
    state = _read_state(state_path)

    job_id = args.job_id or resolve_resumable_job_id(controller, state.get(args.collection_id))
    started = None
    if not job_id:
        started = controller.start(args.collection_id, created_by=os.environ.get("USER"))
        job_id = started["jobId"]
        if args.collection_id:
            state[args.collection_id] = job_id
            _write_state(state_path, state)

    poller = create_poller_from_env(controller=controller, max_files=args.max_files or None)
    stats = poller.run_until_terminal(job_id, max_invocations=args.max_invocations or None)
    job = controller.status(job_id)
    print(
        json.dumps(
            {
                "success": True,
                "job_id": job_id,
                "started": started,
                "stats": stats,
                "error": job.get("error"),
                "report_markdown": job.get("report_markdown"),
            },
            ensure_ascii=False,
        )
    )
    return 0 if job["status"] in {"completed", "queued", "running"} else 1


if __name__ == "__main__":
    raise SystemExit(main())
