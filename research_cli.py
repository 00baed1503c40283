import argparse
import sys
import time
from pathlib import Path
from typing import List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"
TERMINAL = ("completed", "failed")


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _print_progress(progress: dict) -> None:
    if not progress:
        print("No progress available.")
        return
    status = progress.get("status")
    pct = progress.get("percentage", 0)
    step = progress.get("step") or ""
    print(f"[{pct:>3}%] {status}: {step}")
    if status == "failed" and progress.get("error"):
        print(f"Error: {progress['error']}")
    if progress.get("offer_retry"):
        print(f"No progress for {progress.get('stalled_seconds')}s; retry with: retry {progress.get('job_id')}")
    elif progress.get("is_stalled"):
        print(f"No progress for {progress.get('stalled_seconds')}s.")
    remaining = progress.get("estimated_seconds_remaining")
    if status not in TERMINAL and remaining is not None:
        print(f"About {remaining}s remaining.")


def _poll_progress(client: httpx.Client, base: str, job_id: str, timeout_s: int = 600) -> Optional[dict]:
    start = time.time()
    last_line = None
    while time.time() - start < timeout_s:
        resp = client.get(_join_url(base, f"/api/jobs/{job_id}/progress"), timeout=10)
        resp.raise_for_status()
        progress = resp.json()
        line = (progress.get("status"), progress.get("percentage"), progress.get("step"), progress.get("is_stalled"))
        if line != last_line:
            _print_progress(progress)
            last_line = line
        if progress.get("status") in TERMINAL:
            return progress
        time.sleep(progress.get("poll_after_seconds") or 2)
    print("Timed out waiting for the job to finish.")
    return None


def _wait_result(client: httpx.Client, base: str, job_id: str, timeout_s: int) -> int:
    final = _poll_progress(client, base, job_id, timeout_s=timeout_s)
    if not final:
        return 1
    return 0 if final.get("status") == "completed" else 1


def _read_cv(path: Optional[str]) -> Optional[str]:
    if not path:
        return None
    return Path(path).read_text(encoding="utf-8", errors="replace")


def run_start(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    payload = {
        "company": args.company,
        "role": args.role,
        "country": args.country,
        "role_links": args.link or [],
        "cv": _read_cv(args.cv_file),
        "target_seniority": args.seniority,
        "user_id": args.user_id,
    }
    with httpx.Client() as client:
        resp = client.post(_join_url(base, "/api/jobs"), json=payload, timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to start job: HTTP {resp.status_code}")
            return 1
        job_id = resp.json().get("job_id")
        print(f"Job {job_id} queued.")
        if args.wait:
            return _wait_result(client, base, job_id, args.timeout)
    return 0


def run_progress(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.get(_join_url(base, f"/api/jobs/{args.job_id}/progress"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to fetch progress: HTTP {resp.status_code}")
            return 1
        _print_progress(resp.json())
    return 0


def run_retry(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.post(_join_url(base, f"/api/jobs/{args.job_id}/retry"), timeout=10)
        if resp.status_code == 409:
            print("Job is still making progress; retry is not available yet.")
            return 1
        if resp.status_code >= 400:
            print(f"Failed to retry job: HTTP {resp.status_code}")
            return 1
        job_id = resp.json().get("job_id")
        print(f"Job {args.job_id} retried as {job_id}.")
        if args.wait:
            return _wait_result(client, base, job_id, args.timeout)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Interview research CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    start = subparsers.add_parser("start", help="Start a research job")
    start.add_argument("--company", required=True, help="Company to research")
    start.add_argument("--role", help="Role title")
    start.add_argument("--country", help="Country or region")
    start.add_argument("--link", action="append", help="Job posting URL (repeatable)")
    start.add_argument("--cv-file", help="Path to a plain-text CV")
    start.add_argument("--seniority", choices=["junior", "mid", "senior"], help="Target seniority")
    start.add_argument("--user-id", help="Owner of the job")
    start.add_argument("--wait", action="store_true", help="Wait for the job to finish")
    start.add_argument("--timeout", type=int, default=600, help="Max wait seconds")

    progress = subparsers.add_parser("progress", help="Show job progress")
    progress.add_argument("job_id")

    retry = subparsers.add_parser("retry", help="Retry a failed or stalled job")
    retry.add_argument("job_id")
    retry.add_argument("--wait", action="store_true", help="Wait for the new job to finish")
    retry.add_argument("--timeout", type=int, default=600, help="Max wait seconds")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "start":
        return run_start(args)
    if args.command == "progress":
        return run_progress(args)
    if args.command == "retry":
        return run_retry(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
