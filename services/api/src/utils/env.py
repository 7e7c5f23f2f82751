"""
Typed environment variables.

Declare a variable once with ``EnvVarSpec`` and read it with ``parse``;
``validate`` checks a list of specs at startup and logs every problem.
"""

import logging
import os
from typing import Any, Callable, Optional, Tuple

from pydantic import BaseModel, ConfigDict, create_model
from pydantic import ValidationError as PydanticValidationError

logger = logging.getLogger(__name__)


class EnvVarSpec(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    id: str
    default: Optional[str] = None
    parse: Callable[[str], Any] = lambda x: x
    type: Tuple[Any, Any] = (str, ...)
    is_optional: bool = False
    is_secret: bool = False


def parse(spec: EnvVarSpec) -> Any:
    raw = os.environ.get(spec.id, spec.default)
    if raw is None or raw == "":
        if spec.is_optional:
            return None
        raise ValueError(f"Environment variable {spec.id} is required")
    return spec.parse(raw)


def validate(specs) -> bool:
    ok = True
    for spec in specs:
        try:
            value = parse(spec)
        except Exception as e:
            logger.error(f"Invalid environment variable {spec.id}: {e}")
            ok = False
            continue
        if value is None:
            continue
        model = create_model(f"Env_{spec.id}", value=spec.type)
        try:
            model(value=value)
        except PydanticValidationError as e:
            shown = "***" if spec.is_secret else repr(value)
            logger.error(f"Environment variable {spec.id}={shown} has the wrong type: {e.errors()[0]['msg']}")
            ok = False
    return ok
