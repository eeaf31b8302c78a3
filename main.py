"""Scenario Continuity — launcher.

    python main.py serve [--data-dir DIR]      start the API with autoreload
    python main.py check FILE [--full]         check one scenario JSON file
"""

import argparse
import asyncio
import logging
import os
import signal
import subprocess
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")

HOST = os.getenv("HOST", "0.0.0.0")
BACKEND_PORT = os.getenv("BACKEND_PORT", "13013")


def serve(args: argparse.Namespace) -> int:
    env = os.environ.copy()
    if args.data_dir:
        env["DATA_DIR"] = str(args.data_dir.resolve())

    proc = subprocess.Popen(
        ["uvicorn", "backend.app:app", "--reload", "--host", HOST, "--port", BACKEND_PORT],
        cwd=ROOT, env=env,
    )

    def shutdown(*_):
        print("\nShutting down...")
        proc.terminate()
        proc.wait()
        sys.exit(0)

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    print(f"Starting backend on http://localhost:{BACKEND_PORT} ...")
    return proc.wait()


def check(args: argparse.Namespace) -> int:
    from scenario_continuity.config import build_llm, load_settings
    from scenario_continuity.judge import LLMJudge
    from scenario_continuity.orchestrator import ScenarioConsistencyService
    from scenario_continuity.storage import load_scenario_file

    settings = load_settings()
    scenario = load_scenario_file(args.file)
    service = ScenarioConsistencyService(LLMJudge(build_llm(settings)), settings=settings)

    if not args.full:
        diagnostics = service.structural_diagnostics(scenario)
        for d in diagnostics:
            print(f"{d.severity.upper():8} {d.code}: {d.message}")
        valid = asyncio.run(service.validate_quick(scenario))
        print("OK" if valid else "FAILED")
        return 0 if valid else 1

    result = asyncio.run(service.evaluate_story_continuity(scenario))
    print(result.model_dump_json(indent=2))
    return 0 if result.overall_assessment in ("ok", "minor_issues") else 1


def main() -> int:
    parser = argparse.ArgumentParser(description="Scenario continuity evaluation")
    sub = parser.add_subparsers(dest="command", required=True)

    p_serve = sub.add_parser("serve", help="Run the API server")
    p_serve.add_argument("--data-dir", type=Path, default=None,
                         help="Scenario storage directory (default: ./data)")
    p_serve.set_defaults(func=serve)

    p_check = sub.add_parser("check", help="Check a scenario JSON file")
    p_check.add_argument("file", type=Path)
    p_check.add_argument("--full", action="store_true",
                         help="Run the full judge-backed evaluation, not just structure")
    p_check.set_defaults(func=check)

    args = parser.parse_args()
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
