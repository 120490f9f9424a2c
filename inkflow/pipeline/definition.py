"""Generate the Cloud Workflows definition for the pipeline.

The definition is derived from `PIPELINE_STAGES`, so adding a stage or a
branch flag only touches the stage list. The extract stage creates a callback
endpoint, hands its URL to ``/stages/extract`` as the callback token and then
suspends on ``events.await_callback`` until the completion signaler posts to it.
The stages run inside one try block whose handler reports TIMED_OUT or FAILED
to ``/pipeline/runs/{workflowId}/status`` before re-raising; a run that gets
through every stage reports SUCCEEDED the same way.

Usage::

    python -m inkflow.pipeline.definition --base-url https://inkflow-xyz.a.run.app > workflow.yaml
"""

from __future__ import annotations

import argparse
import sys
from typing import Any, Dict, List

import yaml

from inkflow.config import get_config

from .runner import DEFAULT_EXTRACT_TIMEOUT_SECONDS, TIMEOUT_ERROR
from .stages import PIPELINE_STAGES, StageSpec


def _expr(value: str) -> str:
    return "${" + value + "}"


def _post(url: str, body: Dict[str, Any], result: str) -> Dict[str, Any]:
    return {
        "call": "http.post",
        "args": {"url": url, "auth": {"type": "OIDC"}, "body": body},
        "result": result,
    }


def _extract_steps(base_url: str, spec: StageSpec, extract_timeout: int) -> List[Dict[str, Any]]:
    name = spec.name
    body = f"{name}_callback.http_request.body"
    return [
        {
            f"{name}_create_callback": {
                "call": "events.create_callback_endpoint",
                "args": {"http_callback_method": "POST"},
                "result": "callback_details",
            }
        },
        {
            f"{name}_start": _post(
                f"{base_url}/stages/{name}",
                {"state": _expr("state"), "callbackToken": _expr("callback_details.url")},
                f"{name}_response",
            )
        },
        {
            f"{name}_await": {
                "try": {
                    "call": "events.await_callback",
                    "args": {"callback": _expr("callback_details"), "timeout": extract_timeout},
                    "result": f"{name}_callback",
                },
                "except": {
                    "as": "e",
                    "steps": [
                        {
                            f"{name}_timeout": {
                                "raise": {"error": TIMEOUT_ERROR, "cause": _expr("e.message")},
                            }
                        }
                    ],
                },
            }
        },
        {
            f"{name}_check": {
                "switch": [
                    {
                        "condition": _expr(f'{body}.status != "SUCCEEDED"'),
                        "steps": [{f"{name}_failed": {"raise": _expr(body)}}],
                    }
                ]
            }
        },
        {
            f"{name}_record": {
                "assign": [
                    {"state.ocrJobId": _expr(f"{name}_response.body.jobId")},
                    {"state.mergedResultLocation": _expr(f"{body}.mergedResultKey")},
                    {"state.stagesRun": _expr(f'list.concat(state.stagesRun, "{name}")')},
                ]
            }
        },
    ]


def _stage_steps(base_url: str, spec: StageSpec) -> List[Dict[str, Any]]:
    name = spec.name
    call = _post(f"{base_url}/stages/{name}", {"state": _expr("state")}, f"{name}_response")
    steps: List[Dict[str, Any]] = [
        {f"{name}_call": {"try": call, "retry": _expr("http.default_retry")}},
        {f"{name}_record": {"assign": [{"state": _expr(f"{name}_response.body.state")}]}},
    ]
    if spec.condition is None:
        return steps
    flag = f'default(map.get(state, "{spec.condition_alias}"), false)'
    return [{f"{name}_gate": {"switch": [{"condition": _expr(f"{flag} == true"), "steps": steps}]}}]


def _status_url(base_url: str) -> str:
    return _expr(f'"{base_url}/pipeline/runs/" + state.workflowId + "/status"')


def _report(base_url: str, body: Dict[str, Any]) -> Dict[str, Any]:
    return _post(_status_url(base_url), body, "status_report")


def _failure_handler(base_url: str) -> Dict[str, Any]:
    error = 'default(map.get(e, "error"), "WorkflowError")'
    cause = 'default(map.get(e, "cause"), default(map.get(e, "message"), ""))'

    def _body(status: str) -> Dict[str, Any]:
        return {"status": status, "error": _expr(error), "cause": _expr(cause), "state": _expr("state")}

    return {
        "as": "e",
        "steps": [
            {
                "report_failure": {
                    "switch": [
                        {
                            "condition": _expr(f'{error} == "{TIMEOUT_ERROR}"'),
                            "steps": [{"report_timed_out": _report(base_url, _body("TIMED_OUT"))}],
                        },
                        {"condition": True, "steps": [{"report_failed": _report(base_url, _body("FAILED"))}]},
                    ]
                }
            },
            {"reraise": {"raise": _expr("e")}},
        ],
    }


def build_workflow_definition(
    base_url: str,
    *,
    stages: tuple[StageSpec, ...] = PIPELINE_STAGES,
    extract_timeout: int = DEFAULT_EXTRACT_TIMEOUT_SECONDS,
) -> Dict[str, Any]:
    """Return the workflow definition as a plain dict ready for YAML rendering."""
    base = base_url.rstrip("/")
    if not base:
        raise ValueError("base_url is required")
    workflow_id = 'default(map.get(args, "workflowId"), sys.get_env("GOOGLE_CLOUD_WORKFLOW_EXECUTION_ID"))'
    init = {
        "assign": [
            {"state": _expr("args")},
            {"state.stagesRun": []},
            {"state.workflowId": _expr(workflow_id)},
        ]
    }
    stage_steps: List[Dict[str, Any]] = []
    for spec in stages:
        if spec.waits_for_callback:
            stage_steps.extend(_extract_steps(base, spec, extract_timeout))
        else:
            stage_steps.extend(_stage_steps(base, spec))
    steps: List[Dict[str, Any]] = [
        {"init": init},
        {"run_stages": {"try": {"steps": stage_steps}, "except": _failure_handler(base)}},
        {"report_succeeded": _report(base, {"status": "SUCCEEDED", "state": _expr("state")})},
    ]
    steps.append(
        {
            "pipeline_complete": {
                "return": {
                    "status": "SUCCEEDED",
                    "stagesRun": _expr("state.stagesRun"),
                    "state": _expr("state"),
                }
            }
        }
    )
    return {"main": {"params": ["args"], "steps": steps}}


def render_workflow_yaml(definition: Dict[str, Any]) -> str:
    return yaml.safe_dump(definition, sort_keys=False, default_flow_style=False)


def main(argv: List[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Render the pipeline Cloud Workflows definition")
    parser.add_argument(
        "--base-url",
        help="Base URL of the deployed inkflow service (defaults to PIPELINE_SERVICE_BASE_URL)",
    )
    parser.add_argument(
        "--extract-timeout",
        type=int,
        help="Seconds to wait for the OCR completion callback (defaults to EXTRACT_TIMEOUT_SECONDS)",
    )
    parser.add_argument("--output", help="Write to this file instead of stdout")
    args = parser.parse_args(argv)

    base_url = args.base_url
    extract_timeout = args.extract_timeout
    if not base_url or extract_timeout is None:
        cfg = get_config()
        base_url = base_url or cfg.pipeline_service_base_url
        if extract_timeout is None:
            extract_timeout = int(cfg.extract_timeout_seconds)
    if not base_url:
        parser.error("--base-url or PIPELINE_SERVICE_BASE_URL is required")

    rendered = render_workflow_yaml(build_workflow_definition(base_url, extract_timeout=extract_timeout))
    if args.output:
        with open(args.output, "w", encoding="utf-8") as handle:
            handle.write(rendered)
    else:
        sys.stdout.write(rendered)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())


__all__ = ["build_workflow_definition", "main", "render_workflow_yaml"]
