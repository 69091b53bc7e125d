#!/usr/bin/env python3
"""Run one workflow locally and print its progress events as JSON lines.

Usage:
    # Offline, against the deterministic stub model:
    python scripts/run_workflow.py --stub --prompt "Summarize the data" --dataset-file data.csv

    # Against an OpenAI-compatible endpoint with tools:
    OPENAI_API_KEY=... python scripts/run_workflow.py --model gpt-4o-mini \\
        --prompt "Look up the order" --tool-config tools.json --stream

The tool config file holds ``{"tools": [{"toolSpec": {...}}]}``. Each tool
spec names its handler as ``"handler": "package.module:function"``; the
module must be importable and match TOOL_HANDLER_ALLOWLIST when that is set.

Environment Variables:
    OPENAI_API_KEY / OPENAI_BASE_URL: model endpoint credentials
    REDIS_URL: idempotency store (falls back to memory for local runs)
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _load_json(path: str | None) -> dict | None:
    if not path:
        return None
    with open(path, "r", encoding="utf-8") as handle:
        return json.load(handle)


async def run_workflow(args: argparse.Namespace) -> dict:
    """Stream one execution, echoing each event, and return the result."""
    # Import here to avoid loading config before env vars are set
    from toolflow.service.runtime import Runtime

    runtime = Runtime()
    dataset = None
    if args.dataset_file:
        dataset = Path(args.dataset_file).read_text(encoding="utf-8")

    request = {
        "model": args.model or runtime.settings.default_model,
        "system_prompt": args.system_prompt,
        "user_prompt": args.prompt,
        "dataset_content": dataset,
        "tool_config": _load_json(args.tool_config) or {"tools": []},
        "tool_execution": bool(args.tool_config),
        "max_iterations": args.max_iterations,
        "guardrail_config": _load_json(args.guardrail_config),
        "stream": args.stream,
    }
    try:
        execution_id = None
        async for event in runtime.orchestrator.stream(request):
            execution_id = event.execution_id
            if event.type == "token" and not args.show_tokens:
                continue
            print(json.dumps(event.to_dict()), flush=True)
        return runtime.orchestrator.get_result(execution_id).to_wire()
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Run a toolflow workflow from the command line",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--prompt", required=True, help="User prompt")
    parser.add_argument("--model", default=None, help="Model id (defaults to DEFAULT_MODEL)")
    parser.add_argument("--system-prompt", default="", help="System prompt")
    parser.add_argument("--dataset-file", default=None, help="File appended as data to analyze")
    parser.add_argument("--tool-config", default=None, help="Path to a toolConfig JSON file")
    parser.add_argument("--guardrail-config", default=None, help="Path to a guardrailConfig JSON file")
    parser.add_argument("--max-iterations", type=int, default=None)
    parser.add_argument("--stream", action="store_true", help="Stream model output")
    parser.add_argument("--show-tokens", action="store_true", help="Print token events too")
    parser.add_argument("--stub", action="store_true", help="Use the offline stub model")

    args = parser.parse_args()

    if args.stub:
        os.environ["MODEL_BACKEND"] = "stub"
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(run_workflow(args))
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print(json.dumps({"type": "result", **result}, indent=2))
    if result.get("status") != "completed":
        sys.exit(2)


if __name__ == "__main__":
    main()
