# workflow_executor.py

import asyncio
import json
import logging
import re
import time
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import aiohttp
from pydantic import BaseModel, ConfigDict, Field

from load_config import APIStepConfig, ByPath, Extraction, LoadTestConfig, WorkflowConfigError

logger = logging.getLogger("LoadRunner.executor")

__all__ = [
    "ErrorKind", "Result", "WorkflowExecutor", "resolve_placeholder",
    "render_template", "resolve_body", "stringify", "get_value_by_path",
    "find_field", "_MISSING",
]

SessionState = Dict[str, Any]

# ---------------------------
# Result Model
# ---------------------------

class ErrorKind(str, Enum):
    """Coarse classification of a failed step, used as the error histogram key."""
    CONNECTION = "connection_error"
    TIMEOUT = "timeout"
    PARSE = "parse_error"
    CLIENT = "client_error"
    UNEXPECTED = "unexpected_error"


class Result(BaseModel):
    """Outcome of one executed step."""
    model_config = ConfigDict(frozen=True)

    step: str = Field(..., description="Workflow step name")
    status_code: int = Field(0, description="HTTP status from the transport layer; 0 when no response arrived")
    duration: float = Field(0.0, ge=0, description="Elapsed seconds from send to body fully read")
    success: bool = Field(True, description="True when the exchange completed and the body parsed")
    error_kind: Optional[ErrorKind] = Field(None, description="Failure classification, None on success")
    error: Optional[str] = Field(None, description="Failure detail for logs")
    response: Optional[bytes] = Field(None, exclude=True, repr=False, description="Raw response payload, only used for extraction")


# ---------------------------
# Template Helpers
# ---------------------------

# Pre-compile for the hot path: '{{key}}' as the whole value, and anywhere inside a string
_whole_placeholder_regex = re.compile(r'^\{\{([^{}]+)\}\}$')
_placeholder_regex = re.compile(r'\{\{([^{}]+?)\}\}')

# --- Sentinel Object for Missing Keys ---
_MISSING = object()


def stringify(value: Any) -> str:
    """Natural string form of a session value: strings as-is, everything else as JSON."""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value)
    except (TypeError, ValueError):
        return str(value)


def resolve_placeholder(template: Any, session: SessionState) -> Any:
    """
    If `template` is exactly '{{key}}' and `key` is in the session, returns the
    session value (native type). Anything else, including a placeholder whose key
    is absent, comes back unchanged.
    """
    if not isinstance(template, str):
        return template
    match = _whole_placeholder_regex.match(template)
    if not match:
        return template
    key = match.group(1).strip()
    if key in session:
        return session[key]
    logger.debug(f"Placeholder '{template}' has no session value; leaving it unresolved.")
    return template


def render_template(template: str, session: SessionState) -> str:
    """Replaces every '{{key}}' occurrence inside a string; unknown keys are left as written."""
    if '{{' not in template:
        return template

    def _replace(match: 're.Match') -> str:
        key = match.group(1).strip()
        if key in session:
            return stringify(session[key])
        return match.group(0)

    return _placeholder_regex.sub(_replace, template)


def resolve_body(data: Any, session: SessionState) -> Any:
    """Resolves whole-value placeholders throughout a JSON body, keeping native value types."""
    if isinstance(data, dict):
        return {key: resolve_body(val, session) for key, val in data.items()}
    if isinstance(data, list):
        return [resolve_body(item, session) for item in data]
    return resolve_placeholder(data, session)


# ---------------------------
# Response Lookup Helpers
# ---------------------------

_path_segment_regex = re.compile(r'\[(\d+)\]|\.?([^.\[\]]+)')


def get_value_by_path(document: Any, path: str) -> Any:
    """
    Walks dot notation for keys and bracket notation for list indices
    (e.g. 'data.items[0].id'). Returns _MISSING when any segment does not exist.
    """
    if not path:
        return _MISSING
    current = document
    for match in _path_segment_regex.finditer(path):
        index_str, part_name = match.group(1), match.group(2)
        if index_str is not None:
            index = int(index_str)
            if not isinstance(current, list) or not 0 <= index < len(current):
                return _MISSING
            current = current[index]
        else:
            if not isinstance(current, dict) or part_name not in current:
                return _MISSING
            current = current[part_name]
    return current


def find_field(document: Any, name: str) -> Any:
    """
    Depth-first search for the first field called `name` anywhere in the document.
    Each key is compared before descending into its value. Null values do not count
    as a match. Returns _MISSING when nothing is found.
    """
    if isinstance(document, dict):
        for key, value in document.items():
            if key == name and value is not None:
                return value
            found = find_field(value, name)
            if found is not _MISSING:
                return found
    elif isinstance(document, list):
        for item in document:
            found = find_field(item, name)
            if found is not _MISSING:
                return found
    return _MISSING


def _locate(document: Any, locator: Extraction) -> Any:
    if isinstance(locator, ByPath):
        value = get_value_by_path(document, locator.path)
    else:
        value = find_field(document, locator.name)
    return _MISSING if value is None else value


# ---------------------------
# Workflow Executor
# ---------------------------

class WorkflowExecutor:
    """
    Runs the configured workflow for one iteration: resolves each step's request
    from the session state, sends it, and feeds extracted response fields back
    into the session for the steps that follow. The first failed step ends the
    iteration.
    """

    def __init__(self, config: LoadTestConfig, session: aiohttp.ClientSession):
        self.config = config
        self.session = session
        self.timeout = aiohttp.ClientTimeout(total=config.request_timeout)
        missing = [name for name in config.workflow if name not in config.apis]
        if missing:
            raise WorkflowConfigError(f"Workflow references undefined API steps: {missing}")
        self.steps: List[Tuple[str, APIStepConfig]] = [(name, config.apis[name]) for name in config.workflow]

    async def execute(self, initial_session: Optional[SessionState] = None, iteration: Any = None) -> List[Result]:
        """Runs one iteration and returns the results of the steps that were attempted."""
        return [result async for result in self.iter_results(initial_session, iteration)]

    async def iter_results(self, initial_session: Optional[SessionState] = None, iteration: Any = None) -> AsyncIterator[Result]:
        """Yields each step's Result as soon as the step finishes."""
        session_state: SessionState = dict(initial_session or {})
        for name, step in self.steps:
            result, document = await self._call_step(name, step, session_state, iteration)
            yield result
            if not result.success:
                logger.debug(f"Iter {iteration}: step '{name}' failed ({result.error_kind.value}); skipping remaining steps.")
                return
            if step.response:
                self._extract(name, document, step.response, session_state, iteration)

    def build_request(self, step: APIStepConfig, session_state: SessionState) -> Tuple[str, Dict[str, str], Dict[str, str], Optional[bytes]]:
        """Resolves URL, query params, headers and body of a step against the session."""
        url = self.config.base_url + render_template(step.url, session_state)

        params = {key: stringify(resolve_placeholder(value, session_state)) for key, value in step.query_params.items()}

        headers = {"Content-Type": "application/json"}
        for key, value in step.headers.items():
            headers[key] = render_template(value, session_state)

        body = None
        if step.body:
            body = json.dumps(resolve_body(step.body, session_state)).encode("utf-8")
        return url, params, headers, body

    async def _call_step(self, name: str, step: APIStepConfig, session_state: SessionState, iteration: Any) -> Tuple[Result, Any]:
        step_identifier = f"Iter {iteration}: step '{name}'"
        request_start_time = time.monotonic()
        try:
            url, params, headers, body = self.build_request(step, session_state)
            async with self.session.request(
                step.method,
                url,
                params=params or None,
                headers=headers,
                data=body,
                timeout=self.timeout,
            ) as resp:
                response_status = resp.status
                raw_body = await resp.read()
            request_duration_s = time.monotonic() - request_start_time

        # --- Handle Connection/Timeout Errors ---
        except asyncio.TimeoutError as timeout_err:
            return self._failure(name, ErrorKind.TIMEOUT, f"Request timed out after {self.config.request_timeout}s: {timeout_err!r}", request_start_time, step_identifier), None
        except aiohttp.ClientConnectionError as conn_err:
            return self._failure(name, ErrorKind.CONNECTION, f"Connection error: {type(conn_err).__name__}: {conn_err}", request_start_time, step_identifier), None

        # --- Handle Other Client Errors ---
        except aiohttp.ClientError as client_err:
            return self._failure(name, ErrorKind.CLIENT, f"HTTP client error: {type(client_err).__name__}: {client_err}", request_start_time, step_identifier), None

        # --- Handle Unexpected Errors ---
        except Exception as e:
            if self.config.debug:
                logger.exception(f"{step_identifier}: Unexpected error during request execution")
            return self._failure(name, ErrorKind.UNEXPECTED, f"Unexpected error: {type(e).__name__}: {e}", request_start_time, step_identifier), None

        logger.debug(f"{step_identifier} received: {response_status} {step.method} {url} ({request_duration_s*1000:.2f} ms)")
        if logger.isEnabledFor(logging.DEBUG):
            body_repr = repr(raw_body)
            logger.debug(f"  Response Body: {body_repr[:250]}{'...' if len(body_repr) > 250 else ''}")

        # --- Parse Response Body ---
        try:
            document = json.loads(raw_body)
        except ValueError as parse_err:
            logger.warning(f"{step_identifier}: Response ({response_status}) is not valid JSON: {parse_err}")
            return Result(
                step=name,
                status_code=response_status,
                duration=request_duration_s,
                success=False,
                error_kind=ErrorKind.PARSE,
                error=f"Invalid JSON response: {parse_err}",
                response=raw_body,
            ), None

        self._log_application_error(step_identifier, document, response_status)

        return Result(
            step=name,
            status_code=response_status,
            duration=request_duration_s,
            response=raw_body,
        ), document

    def _failure(self, name: str, kind: ErrorKind, message: str, started: float, step_identifier: str) -> Result:
        duration = time.monotonic() - started
        logger.warning(f"{step_identifier}: {message} ({duration*1000:.2f} ms)")
        return Result(step=name, duration=duration, success=False, error_kind=kind, error=message)

    def _log_application_error(self, step_identifier: str, document: Any, response_status: int):
        # Business-level error codes inside a 2xx/4xx body stay transport successes
        if not isinstance(document, dict):
            return
        code = document.get("code")
        if isinstance(code, (int, float)) and not isinstance(code, bool) and code != 0:
            message = document.get("msg") or document.get("message") or ""
            logger.warning(f"{step_identifier}: Response ({response_status}) carries application error code {code} {message}".rstrip())

    def _extract(self, name: str, document: Any, extractions: Dict[str, Extraction], session_state: SessionState, iteration: Any):
        """Copies the declared response fields into the session; misses are only logged."""
        for var_name, locator in extractions.items():
            value = _locate(document, locator)
            if value is _MISSING:
                source = f"path '{locator.path}'" if isinstance(locator, ByPath) else f"field '{locator.name}'"
                logger.warning(f"Iter {iteration}: step '{name}': {source} not found in response; '{var_name}' not set.")
                continue
            session_state[var_name] = value
            if logger.isEnabledFor(logging.DEBUG):
                log_val_repr = repr(value)
                logger.debug(f"Iter {iteration}: step '{name}': extracted '{var_name}' = {log_val_repr[:100]}{'...' if len(log_val_repr) > 100 else ''}")
