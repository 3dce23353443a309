# load_config.py

import csv
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

logger = logging.getLogger("LoadRunner.config")

__all__ = [
    "ByName", "ByPath", "Extraction", "APIStepConfig", "LoadTestConfig",
    "WorkflowConfigError", "load_run_config", "load_api_table",
    "load_test_data", "load_config",
]


class WorkflowConfigError(ValueError):
    """Raised when the workflow references a step that has no API definition."""


# ---------------------------
# Extraction Locators
# ---------------------------

class ByName(BaseModel):
    """Find the first field called `name` anywhere in the response (depth-first)."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="Field name searched recursively in the response document")


class ByPath(BaseModel):
    """Walk an exact dot/bracket path in the response (e.g. 'data.items[0].id')."""
    model_config = ConfigDict(frozen=True)

    path: str = Field(..., min_length=1, description="Path expression evaluated against the response document")


Extraction = Union[ByPath, ByName]


# ---------------------------
# API Step Model
# ---------------------------

class APIStepConfig(BaseModel):
    """One named API call of the workflow. String values may contain {{variables}}."""
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    url: str = Field(..., description="URL path relative to the base URL. Can contain {{variables}}.")
    method: str = Field("GET", description="HTTP method (GET, POST, PUT, etc.)")
    headers: Dict[str, str] = Field(default_factory=dict, description="Request headers. {{variables}} are replaced inside the value.")
    query_params: Dict[str, str] = Field(default_factory=dict, alias="queryParams", description="Query parameters. A value of exactly '{{var}}' is replaced by the session value.")
    body: Dict[str, Any] = Field(default_factory=dict, description="JSON body fields. A value of exactly '{{var}}' is replaced by the native session value.")
    response: Dict[str, Extraction] = Field(default_factory=dict, description="Session key -> locator of the response field to extract ('token' or {'path': 'data.token'})")

    @field_validator('method')
    def validate_method(cls, v):
        allowed_methods = ['GET', 'POST', 'PUT', 'DELETE', 'HEAD', 'PATCH', 'OPTIONS']
        method_upper = v.upper()
        if method_upper not in allowed_methods:
            raise ValueError(f"method must be one of {allowed_methods}, got '{v}'")
        return method_upper

    @field_validator('response', mode='before')
    def coerce_plain_field_names(cls, v):
        # A bare string is the recursive field-name lookup
        if isinstance(v, dict):
            return {key: {"name": loc} if isinstance(loc, str) else loc for key, loc in v.items()}
        return v


# ---------------------------
# Run Configuration Model
# ---------------------------

class LoadTestConfig(BaseModel):
    """Validated, read-only configuration for one load run."""
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    total_requests: int = Field(0, ge=0, alias="totalRequests", description="Number of iterations to run. 0 switches to duration mode.")
    concurrency: int = Field(1, ge=1, description="Number of parallel workers and ticket channel capacity")
    duration: float = Field(0, ge=0, description="Run length in seconds (duration mode only)")
    workflow: List[str] = Field(default_factory=list, description="Ordered step names executed once per iteration")
    base_url: str = Field(..., alias="baseURL", description="Base URL prefixed to every step URL")
    apis: Dict[str, APIStepConfig] = Field(default_factory=dict, description="Step name -> API definition")
    test_data: Optional[List[Dict[str, str]]] = Field(None, alias="testData", description="Preloaded test-data records, one per iteration")
    test_data_mode: Literal['exhaust', 'cycle'] = Field('exhaust', alias="testDataMode", description="'exhaust' consumes each record once, 'cycle' wraps around")
    request_timeout: float = Field(10.0, gt=0, alias="requestTimeout", description="Per-request timeout in seconds, independent of the run duration")
    log_queue_size: int = Field(1000, ge=1, alias="logQueueSize", description="Capacity of the asynchronous log queue; records are dropped when full")
    debug: bool = Field(False, description="Enable debug logging")

    @field_validator('base_url')
    def strip_trailing_slash(cls, v):
        return v.rstrip('/')

    @model_validator(mode='after')
    def check_workflow_steps(self) -> 'LoadTestConfig':
        missing = [name for name in self.workflow if name not in self.apis]
        if missing:
            raise WorkflowConfigError(f"Workflow references undefined API steps: {missing}")
        return self

    @property
    def duration_mode(self) -> bool:
        return self.total_requests == 0


# ---------------------------
# File Loaders
# ---------------------------

def _read_json(path: Union[str, Path]) -> Any:
    with Path(path).open("r", encoding="utf-8") as f:
        return json.load(f)


def load_run_config(path: Union[str, Path]) -> Dict[str, Any]:
    """Reads the run config JSON (totalRequests, concurrency, duration, workflow, baseURL...)."""
    data = _read_json(path)
    if not isinstance(data, dict):
        raise ValueError(f"Run config '{path}' must contain a JSON object, got {type(data).__name__}")
    logger.debug(f"Loaded run config from {path}: keys={list(data.keys())}")
    return data


def load_api_table(path: Union[str, Path]) -> Dict[str, Any]:
    """Reads the API table JSON mapping step names to API definitions."""
    data = _read_json(path)
    if not isinstance(data, dict):
        raise ValueError(f"API table '{path}' must contain a JSON object, got {type(data).__name__}")
    logger.debug(f"Loaded {len(data)} API definitions from {path}")
    return data


def load_test_data(path: Union[str, Path]) -> List[Dict[str, str]]:
    """
    Reads CSV test data. The first row holds the column names; every later row
    becomes one record. Short rows only fill the columns they have.
    """
    with Path(path).open("r", encoding="utf-8", newline="") as f:
        rows = list(csv.reader(f))
    if not rows:
        raise ValueError(f"Test data file '{path}' is empty; expected a header row")

    headers = rows[0]
    records = [{headers[i]: value for i, value in enumerate(row) if i < len(headers)} for row in rows[1:] if row]
    logger.info(f"Loaded {len(records)} test data records from {path} (columns: {headers})")
    return records


def load_config(
    config_path: Union[str, Path],
    api_path: Union[str, Path],
    test_data_path: Optional[Union[str, Path]] = None,
    **overrides: Any,
) -> LoadTestConfig:
    """Builds a validated LoadTestConfig from the config/API files and optional CSV test data."""
    data = load_run_config(config_path)
    data["apis"] = load_api_table(api_path)
    if test_data_path:
        data["testData"] = load_test_data(test_data_path)
    for name, value in overrides.items():
        if value is None:
            continue
        # Write under the alias so an override beats the value read from file
        field_info = LoadTestConfig.model_fields[name]
        data[field_info.alias or name] = value
    return LoadTestConfig.model_validate(data)
