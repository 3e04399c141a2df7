"""
Flow API Server

FastAPI server for validating, exporting and storing flow definitions,
starting flow runs in the background and inspecting persisted execution
states.

Usage:
    python -m uvicorn api_server:app --host 0.0.0.0 --port 8080
"""

import asyncio
import json
import mimetypes
import os
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import FileResponse
from pydantic import BaseModel, Field

import flow_config
from flow_errors import ConfigurationError, InvalidFlowError
from flow_serializer import FlowLibrary, export_flow, parse_flow, serialize_flow
from flow_validator import split_issues, validate
from persistence.execution_state import ExecutionStateStore, JSONExecutionStateStore

app = FastAPI(
    title="Flow API",
    description="HTTP API for flow definitions and executions",
    version=flow_config.GENERATOR_VERSION,
)

# --- Configuration ---

WORKING_DIR = os.environ.get("FLOW_WORKING_DIR", str(Path(__file__).resolve().parent))
FLOW_PYTHON = os.environ.get("FLOW_PYTHON", sys.executable)
STATE_DIR = flow_config.STATE_DIR or "output/states"
ARTIFACTS_DIR = Path(flow_config.ARTIFACTS_DIR)

# --- In-memory storage ---

run_tasks: dict[str, dict] = {}

_library: Optional[FlowLibrary] = None
_state_store: Optional[ExecutionStateStore] = None


def get_library() -> FlowLibrary:
    global _library
    if _library is None:
        _library = FlowLibrary(flow_config.FLOW_LIBRARY_DIR)
    return _library


def get_state_store() -> ExecutionStateStore:
    global _state_store
    if _state_store is None:
        _state_store = JSONExecutionStateStore(STATE_DIR)
    return _state_store


# --- Request/Response models ---


class FlowPayload(BaseModel):
    flow: Optional[dict[str, Any]] = None  # plain flow document
    text: Optional[str] = None  # exported text format


class ParseRequest(BaseModel):
    text: str
    verify_checksum: bool = True
    expected_version: Optional[str] = None


class RunRequest(BaseModel):
    flow_key: str
    input: dict[str, Any] = Field(default_factory=dict)
    url: Optional[str] = None
    headless: bool = True
    pause_resume: bool = False
    skip_auth: bool = False
    screenshots: bool = False


# --- Helpers ---


def _issues(issues) -> list[dict]:
    return [i.to_dict() for i in issues]


def _payload_document(payload: FlowPayload) -> dict[str, Any]:
    """Raw flow mapping from a request, parsing the text form when given."""
    if payload.flow is not None:
        return payload.flow
    if payload.text:
        result = parse_flow(payload.text)
        if result.flow is None:
            raise HTTPException(status_code=422, detail={"errors": _issues(result.errors)})
        return serialize_flow(result.flow)
    raise HTTPException(status_code=422, detail="Provide either 'flow' or 'text'")


def _run_summary(t: dict) -> dict:
    return {k: v for k, v in t.items() if k != "log_lines"} | {"log_count": len(t["log_lines"])}


# --- Endpoints ---


@app.get("/health")
async def health():
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.post("/api/flows/validate")
async def validate_flow(payload: FlowPayload):
    """Validate a flow document or exported text."""
    if payload.flow is None and payload.text:
        result = parse_flow(payload.text)
        return {
            "valid": result.valid,
            "errors": _issues(result.errors),
            "warnings": _issues(result.warnings),
        }
    errors, warnings = split_issues(validate(_payload_document(payload)))
    return {"valid": not errors, "errors": _issues(errors), "warnings": _issues(warnings)}


@app.post("/api/flows/export")
async def export_flow_text(payload: FlowPayload):
    """Export a flow document to the text format with provenance header."""
    result = export_flow(_payload_document(payload))
    if not result.success:
        raise HTTPException(
            status_code=422,
            detail={"errors": _issues(result.errors), "warnings": _issues(result.warnings)},
        )
    return {
        "text": result.text,
        "metadata": result.metadata.to_dict(),
        "warnings": _issues(result.warnings),
    }


@app.post("/api/flows/parse")
async def parse_flow_text(req: ParseRequest):
    """Parse exported text back into a flow document."""
    result = parse_flow(req.text, verify_checksum=req.verify_checksum, expected_version=req.expected_version)
    return {
        "valid": result.valid,
        "flow": serialize_flow(result.flow) if result.flow is not None else None,
        "checksum": result.checksum,
        "header": result.header,
        "errors": _issues(result.errors),
        "warnings": _issues(result.warnings),
    }


@app.get("/api/flows")
async def list_flows():
    """List flows stored in the library directory."""
    return get_library().summaries()


@app.get("/api/flows/{key}")
async def get_flow(key: str):
    """Get a stored flow as a plain document."""
    library = get_library()
    try:
        if not library.has(key):
            raise HTTPException(status_code=404, detail="Flow not found")
        flow = library.get(key)
    except InvalidFlowError as e:
        raise HTTPException(status_code=422, detail={"message": str(e), "errors": _issues(e.issues)})
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"key": key, "content": serialize_flow(flow)}


@app.post("/api/flows")
async def create_flow(payload: FlowPayload):
    """Validate and store a flow under its metadata name."""
    document = _payload_document(payload)
    result = export_flow(document)
    if not result.success:
        raise HTTPException(status_code=422, detail={"errors": _issues(result.errors)})
    try:
        path = get_library().save(document)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "status": "created",
        "key": FlowLibrary.key_for(path),
        "checksum": result.metadata.checksum,
        "warnings": _issues(result.warnings),
    }


@app.delete("/api/flows/{key}")
async def delete_flow(key: str):
    """Delete a stored flow."""
    try:
        deleted = get_library().delete(key)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not deleted:
        raise HTTPException(status_code=404, detail="Flow not found")
    return {"status": "deleted", "key": key}


# --- Run Task Management ---


async def _run_flow(task_id: str, flow_path: str, req: RunRequest):
    """Background coroutine: runs flow_cli.py and captures output."""
    cmd = [
        FLOW_PYTHON, "flow_cli.py", "run", flow_path,
        "--input", json.dumps(req.input),
    ]
    if req.url:
        cmd.extend(["--url", req.url])
    if not req.headless:
        cmd.append("--visible")
    if req.pause_resume:
        cmd.append("--pause-resume")
    if req.skip_auth:
        cmd.append("--skip-auth")
    if req.screenshots:
        cmd.extend(["--screenshots", "--artifacts-dir", str(ARTIFACTS_DIR)])

    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        cwd=WORKING_DIR,
        env={**os.environ, "FLOW_STATE_DIR": str(Path(STATE_DIR).resolve())},
    )

    run_tasks[task_id]["pid"] = proc.pid
    lines = run_tasks[task_id]["log_lines"]

    async for line in proc.stdout:
        text = line.decode("utf-8", errors="replace").rstrip()
        lines.append(text)

    await proc.wait()
    run_tasks[task_id]["returncode"] = proc.returncode
    run_tasks[task_id]["status"] = "completed" if proc.returncode == 0 else "failed"
    run_tasks[task_id]["finished_at"] = datetime.now(timezone.utc).isoformat()


@app.post("/api/runs")
async def start_run(req: RunRequest):
    """Start a flow run as a background task."""
    library = get_library()
    try:
        if not library.has(req.flow_key):
            raise HTTPException(status_code=404, detail="Flow not found")
        flow_path = library.path_for(req.flow_key)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    task_id = str(uuid.uuid4())[:8]
    run_tasks[task_id] = {
        "task_id": task_id,
        "flow_key": req.flow_key,
        "headless": req.headless,
        "status": "running",
        "started_at": datetime.now(timezone.utc).isoformat(),
        "finished_at": None,
        "pid": None,
        "returncode": None,
        "log_lines": [],
    }

    asyncio.create_task(_run_flow(task_id, str(flow_path.resolve()), req))
    return {"task_id": task_id, "status": "running"}


@app.get("/api/runs")
async def list_runs():
    """List all run tasks."""
    return [_run_summary(t) for t in run_tasks.values()]


@app.get("/api/runs/{task_id}")
async def get_run(task_id: str, tail: int = 50):
    """Get run task status and log tail."""
    if task_id not in run_tasks:
        raise HTTPException(status_code=404, detail="Task not found")
    t = run_tasks[task_id]
    return _run_summary(t) | {"log_tail": t["log_lines"][-tail:]}


# --- Execution states ---


@app.get("/api/executions")
async def list_executions(status: Optional[str] = None, flow_key: Optional[str] = None):
    """List persisted execution states, newest first."""
    try:
        states = get_state_store().list_states(status=status, flow_key=flow_key)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid status: {status}")
    return [s.to_dict() for s in states]


@app.get("/api/executions/{state_id}")
async def get_execution(state_id: str):
    state = get_state_store().get_state(state_id)
    if state is None:
        raise HTTPException(status_code=404, detail="Execution not found")
    return state.to_dict()


@app.delete("/api/executions/{state_id}")
async def delete_execution(state_id: str):
    if not get_state_store().delete_state(state_id):
        raise HTTPException(status_code=404, detail="Execution not found")
    return {"status": "deleted", "id": state_id}


# --- Error screenshots ---


@app.get("/api/artifacts")
async def list_artifacts():
    """List error screenshots in the artifacts directory."""
    if not ARTIFACTS_DIR.is_dir():
        return []
    entries = sorted(ARTIFACTS_DIR.glob("*.png"), key=lambda p: p.stat().st_mtime, reverse=True)
    return [
        {
            "name": p.name,
            "size": p.stat().st_size,
            "modified": datetime.fromtimestamp(p.stat().st_mtime, tz=timezone.utc).isoformat(),
        }
        for p in entries
    ]


@app.get("/api/artifacts/{name}")
async def download_artifact(name: str):
    """Download one artifact file."""
    target = (ARTIFACTS_DIR / name).resolve()
    if not target.is_relative_to(ARTIFACTS_DIR.resolve()):
        raise HTTPException(status_code=403, detail="Access denied")
    if not target.exists() or not target.is_file():
        raise HTTPException(status_code=404, detail="File not found")
    media_type, _ = mimetypes.guess_type(str(target))
    return FileResponse(target, media_type=media_type or "application/octet-stream", filename=target.name)


if __name__ == "__main__":
    import uvicorn

    port = int(os.environ.get("FLOW_API_PORT", "8080"))
    uvicorn.run(app, host="0.0.0.0", port=port)
