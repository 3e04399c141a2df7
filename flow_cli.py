#!/usr/bin/env python3
"""
Flow CLI

Validate, export and run flow definitions from the command line.

Usage:
    python flow_cli.py validate <file>
    python flow_cli.py export <file> [--output <path>]
    python flow_cli.py run <file> --input '{"key": "value"}' [--url <url>] [--visible]
                       [--artifacts-dir <dir>] [--pause-resume] [--skip-auth]
    python flow_cli.py resume <state_id> <file> [--url <url>] [--visible]
    python flow_cli.py states [--status paused] [--flow <key>]
    python flow_cli.py delete-state <state_id>

Credentials for auth steps are read from FLOW_USERNAME / FLOW_PASSWORD.
"""

import argparse
import asyncio
import json
import logging
import os
import random
import sys
from pathlib import Path

from playwright.async_api import async_playwright

import flow_config
from flow_context import Credentials, ExecutionContext, ExecutionFlags
from flow_engine import FlowEngine
from flow_errors import FlowError
from flow_serializer import export_flow, load_flow, parse_flow
from persistence.execution_state import get_default_state_store

logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')
logger = logging.getLogger(__name__)

BROWSER_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--start-maximized",
]

ANTI_DETECT_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', {get: () => undefined});
"""


def output_json(data):
    """Print JSON to stdout."""
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def read_input(value):
    """--input accepts inline JSON or @path/to/file.json."""
    if not value:
        return {}
    if value.startswith("@"):
        value = Path(value[1:]).read_text(encoding="utf-8")
    data = json.loads(value)
    if not isinstance(data, dict):
        raise ValueError("--input must be a JSON object")
    return data


def credentials_from_env():
    username = os.environ.get("FLOW_USERNAME")
    password = os.environ.get("FLOW_PASSWORD")
    if username and password:
        return Credentials(username=username, password=password)
    return None


async def create_page(browser, flow):
    """Create a browser context and page using the flow's browser config."""
    browser_config = flow.config.browser if flow.config and flow.config.browser else None
    vw = (browser_config.viewport_width if browser_config and browser_config.viewport_width
          else 1920 + random.randint(-100, 100))
    vh = (browser_config.viewport_height if browser_config and browser_config.viewport_height
          else 1080 + random.randint(-100, 100))
    user_agent = (browser_config.user_agent if browser_config and browser_config.user_agent else (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ))
    ctx = await browser.new_context(
        viewport={"width": vw, "height": vh},
        user_agent=user_agent,
        locale="fr-FR",
        timezone_id="Europe/Paris",
    )
    page = await ctx.new_page()
    await page.add_init_script(ANTI_DETECT_SCRIPT)
    return page


async def run_in_browser(args, flow, run):
    """Launch Chromium, open the start URL and hand the page to `run`."""
    headless = args.headless
    if flow.config and flow.config.browser and flow.config.browser.headless is not None and not args.visible:
        headless = flow.config.browser.headless
    slow_mo = flow.config.browser.slow_mo if flow.config and flow.config.browser else None

    async with async_playwright() as p:
        browser = await p.chromium.launch(headless=headless, args=BROWSER_ARGS, slow_mo=slow_mo or 0)
        try:
            page = await create_page(browser, flow)
            start_url = args.url or (flow.config.base_url if flow.config else None)
            if start_url:
                logger.info(f"Opening {start_url}")
                await page.goto(start_url, wait_until="domcontentloaded",
                                timeout=flow_config.NAVIGATION_TIMEOUT_MS)
            return await run(page)
        finally:
            await browser.close()


def build_context(args, page, input_data, enable_pause_resume):
    return ExecutionContext(
        session=page,
        input=input_data,
        credentials=credentials_from_env(),
        artifacts_dir=args.artifacts_dir,
        flags=ExecutionFlags(
            skip_auth=getattr(args, "skip_auth", False),
            stop_on_error=False if getattr(args, "continue_on_error", False) else None,
            verbose=args.verbose,
            screenshot_on_error=True if args.screenshots else None,
            enable_pause_resume=enable_pause_resume,
        ),
    )


# --- Commands ---


def cmd_validate(args):
    text = Path(args.file).read_text(encoding="utf-8")
    result = parse_flow(text, verify_checksum=not args.no_checksum)
    output_json({
        "file": args.file,
        "valid": result.valid,
        "checksum": result.checksum,
        "steps": len(result.flow.steps) if result.flow else 0,
        "errors": [i.to_dict() for i in result.errors],
        "warnings": [i.to_dict() for i in result.warnings],
    })
    if not result.valid:
        sys.exit(1)


def cmd_export(args):
    flow = load_flow(args.file, verify_checksum=not args.no_checksum)
    result = export_flow(flow)
    if not result.success:
        output_json({"success": False, "errors": [i.to_dict() for i in result.errors]})
        sys.exit(1)
    for warning in result.warnings:
        logger.warning(f"{warning.path}: {warning.message}")
    if args.output:
        out = Path(args.output)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(result.text, encoding="utf-8")
        logger.info(f"Exported {result.metadata.flow_id} v{result.metadata.flow_version} to {out}")
        output_json({"success": True, "output": str(out), **result.metadata.to_dict()})
    else:
        sys.stdout.write(result.text)


def report_result(args, result):
    output_json(result.to_dict() if args.logs else {k: v for k, v in result.to_dict().items() if k != "logs"})
    if result.paused:
        logger.info(f"Flow paused; resume with: resume {result.state_id} {args.file}")
    for step in result.failed_steps():
        logger.error(f"Step {step.step_id} failed after {step.attempts} attempt(s): {step.error}")
    if not result.success:
        sys.exit(1)


def cmd_run(args):
    flow = load_flow(args.file)
    input_data = read_input(args.input)
    engine = FlowEngine(state_store=get_default_state_store())

    async def run(page):
        context = build_context(args, page, input_data, args.pause_resume)
        return await engine.execute(flow, context)

    result = asyncio.run(run_in_browser(args, flow, run))
    report_result(args, result)


def cmd_resume(args):
    flow = load_flow(args.file)
    input_data = read_input(args.input)
    engine = FlowEngine(state_store=get_default_state_store())

    async def run(page):
        context = build_context(args, page, input_data, True)
        return await engine.resume(args.state_id, flow, context)

    result = asyncio.run(run_in_browser(args, flow, run))
    report_result(args, result)


def cmd_states(args):
    if not flow_config.STATE_DIR:
        logger.warning("FLOW_STATE_DIR is not set; states are only kept in memory")
    store = get_default_state_store()
    states = store.list_states(status=args.status, flow_key=args.flow)
    output_json([s.to_dict() for s in states])


def cmd_delete_state(args):
    store = get_default_state_store()
    deleted = store.delete_state(args.state_id)
    output_json({"id": args.state_id, "deleted": deleted})
    if not deleted:
        sys.exit(1)


def main():
    parser = argparse.ArgumentParser(description="Flow CLI")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log every step at INFO level")
    sub = parser.add_subparsers(dest="command", required=True)

    p_val = sub.add_parser("validate", help="Parse and validate a flow file")
    p_val.add_argument("file")
    p_val.add_argument("--no-checksum", action="store_true", help="Skip checksum verification")

    p_exp = sub.add_parser("export", help="Export a flow with a provenance header")
    p_exp.add_argument("file")
    p_exp.add_argument("--output", "-o", help="Output file (default: stdout)")
    p_exp.add_argument("--no-checksum", action="store_true", help="Skip checksum verification")

    for name in ("run", "resume"):
        p = sub.add_parser(name, help=f"{name.capitalize()} a flow in Chromium")
        if name == "resume":
            p.add_argument("state_id")
        p.add_argument("file")
        p.add_argument("--input", default="", help='JSON object or @file.json')
        p.add_argument("--url", help="Start URL (default: config.baseUrl)")
        p.add_argument("--headless", action="store_true", default=flow_config.HEADLESS)
        p.add_argument("--visible", action="store_true", help="Run with visible browser")
        p.add_argument("--artifacts-dir", default=None, help="Directory for error screenshots")
        p.add_argument("--screenshots", action="store_true", help="Screenshot failing steps")
        p.add_argument("--skip-auth", action="store_true", help="Skip auth steps (session already logged in)")
        p.add_argument("--continue-on-error", action="store_true", help="Keep going after a failed step")
        p.add_argument("--logs", action="store_true", help="Include structured logs in the output")
        if name == "run":
            p.add_argument("--pause-resume", action="store_true", help="Persist state after every step")

    p_states = sub.add_parser("states", help="List persisted execution states")
    p_states.add_argument("--status", choices=["running", "paused", "completed", "failed"])
    p_states.add_argument("--flow", help="Filter by flow key")

    p_del = sub.add_parser("delete-state", help="Delete a persisted execution state")
    p_del.add_argument("state_id")

    args = parser.parse_args()

    if getattr(args, "visible", False):
        args.headless = False
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    commands = {
        "validate": cmd_validate,
        "export": cmd_export,
        "run": cmd_run,
        "resume": cmd_resume,
        "states": cmd_states,
        "delete-state": cmd_delete_state,
    }

    try:
        commands[args.command](args)
    except (FlowError, OSError, ValueError) as e:
        output_json({"error": str(e), "command": args.command})
        sys.exit(1)


if __name__ == "__main__":
    main()
