from __future__ import annotations

import argparse
import json
import sys
from typing import Optional, Sequence

from pdp_core.config import HSMSettings, PDPSettings
from pdp_core.hsm import HSMError, hsm_factory
from pdp_core.logger import get_logger
from pdp_core.pipeline import build_pipeline
from pdp_core.utils import new_id

log = get_logger("PDP.CLI")

SELF_TEST_PAYLOAD = b"pdp-core HSM self-test"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pdp-core", description="PDP submission pipeline and signing tools")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("hsm-status", help="Show the configured signing backend status")

    sub.add_parser("hsm-test", help="Generate a throwaway key, sign, verify and delete it")

    worker = sub.add_parser("worker", help="Run due dispatch and reconciliation tasks")
    lane = worker.add_mutually_exclusive_group()
    lane.add_argument("--once", action="store_true", help="Run due tasks once and exit (default)")
    lane.add_argument("--forever", action="store_true", help="Keep polling for due tasks")
    worker.add_argument("--tick", type=float, default=5.0, help="Seconds between polls with --forever")
    return parser


def _print(data) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def hsm_status() -> int:
    provider = hsm_factory(HSMSettings.from_env())
    _print(provider.get_status())
    return 0


def hsm_test() -> int:
    settings = HSMSettings.from_env()
    provider = hsm_factory(settings)
    key_id = f"selftest-{new_id()[:12]}"
    report = {"key_id": key_id, "algorithm": settings.default_algorithm}
    try:
        provider.generate_key_pair(key_id, {"key_size": settings.default_key_size})
        signature = provider.sign(SELF_TEST_PAYLOAD, key_id, settings.default_algorithm)
        report["verified"] = provider.verify(SELF_TEST_PAYLOAD, signature, key_id, settings.default_algorithm)
        report["tamper_detected"] = not provider.verify(
            SELF_TEST_PAYLOAD + b"!", signature, key_id, settings.default_algorithm
        )
    except HSMError as e:
        report["error"] = str(e)
    finally:
        try:
            report["deleted"] = provider.delete_key(key_id)
        except HSMError as e:
            report["deleted"] = False
            log.warning(f"[CLI] could not delete self-test key key_id={key_id}: {e}")

    report["ok"] = bool(report.get("verified") and report.get("tamper_detected") and not report.get("error"))
    _print(report)
    return 0 if report["ok"] else 1


def worker(forever: bool, tick: float) -> int:
    pipeline = build_pipeline(PDPSettings.from_env())
    try:
        if forever:
            try:
                pipeline.worker.run_forever(tick_seconds=tick)
            except KeyboardInterrupt:
                pipeline.worker.stop()
        else:
            _print({"tasks_run": pipeline.worker.run_once()})
    finally:
        pipeline.close()
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "hsm-status":
        return hsm_status()
    if args.command == "hsm-test":
        return hsm_test()
    if args.command == "worker":
        return worker(args.forever, args.tick)
    parser.error(f"unknown command {args.command}")
    return 2


if __name__ == "__main__":
    sys.exit(main())
