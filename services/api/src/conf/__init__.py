from pydantic import BaseModel

from utils import env, log
from utils.env import EnvVarSpec

logger = log.get_logger(__name__)

#### Types ####

class HttpServerConf(BaseModel):
    host: str
    port: int
    autoreload: bool

class CollaboratorsConf(BaseModel):
    product_service_url: str
    cart_service_url: str
    notification_service_url: str
    timeout_seconds: float
    api_key: str | None = None

class SchedulerConf(BaseModel):
    enabled: bool
    auctions_interval_seconds: int
    negotiations_interval_seconds: int
    ending_soon_interval_seconds: int
    reconcile_interval_seconds: int
    settlement_grace_seconds: int
    lock_ttl_seconds: int

#### Env Vars ####

## Logging ##

LOG_LEVEL = EnvVarSpec(id="LOG_LEVEL", default="INFO")

## HTTP ##

HTTP_HOST = EnvVarSpec(id="HTTP_HOST", default="0.0.0.0")

HTTP_PORT = EnvVarSpec(id="HTTP_PORT", default="8000", parse=int, type=(int, ...))

HTTP_AUTORELOAD = EnvVarSpec(
    id="HTTP_AUTORELOAD",
    parse=lambda x: x.lower() == "true",
    default="false",
    type=(bool, ...),
)

HTTP_EXPOSE_ERRORS = EnvVarSpec(
    id="HTTP_EXPOSE_ERRORS",
    default="false",
    parse=lambda x: x.lower() == "true",
    type=(bool, ...),
)

## Collaborators ##

PRODUCT_SERVICE_URL = EnvVarSpec(id="PRODUCT_SERVICE_URL", default="http://localhost:8001")

CART_SERVICE_URL = EnvVarSpec(id="CART_SERVICE_URL", default="http://localhost:8002")

NOTIFICATION_SERVICE_URL = EnvVarSpec(id="NOTIFICATION_SERVICE_URL", default="http://localhost:8003")

COLLABORATOR_TIMEOUT_SECONDS = EnvVarSpec(
    id="COLLABORATOR_TIMEOUT_SECONDS",
    default="10",
    parse=float,
    type=(float, ...),
)

COLLABORATOR_API_KEY = EnvVarSpec(id="COLLABORATOR_API_KEY", is_optional=True, is_secret=True)

## Scheduler ##

SCHEDULER_ENABLED = EnvVarSpec(
    id="SCHEDULER_ENABLED",
    default="true",
    parse=lambda x: x.lower() == "true",
    type=(bool, ...),
)

SWEEP_AUCTIONS_INTERVAL_SECONDS = EnvVarSpec(
    id="SWEEP_AUCTIONS_INTERVAL_SECONDS", default="5", parse=int, type=(int, ...)
)

SWEEP_NEGOTIATIONS_INTERVAL_SECONDS = EnvVarSpec(
    id="SWEEP_NEGOTIATIONS_INTERVAL_SECONDS", default="60", parse=int, type=(int, ...)
)

SWEEP_ENDING_SOON_INTERVAL_SECONDS = EnvVarSpec(
    id="SWEEP_ENDING_SOON_INTERVAL_SECONDS", default="1800", parse=int, type=(int, ...)
)

SWEEP_RECONCILE_INTERVAL_SECONDS = EnvVarSpec(
    id="SWEEP_RECONCILE_INTERVAL_SECONDS", default="60", parse=int, type=(int, ...)
)

SETTLEMENT_GRACE_SECONDS = EnvVarSpec(
    id="SETTLEMENT_GRACE_SECONDS", default="60", parse=int, type=(int, ...)
)

SCHEDULER_LOCK_TTL_SECONDS = EnvVarSpec(
    id="SCHEDULER_LOCK_TTL_SECONDS", default="120", parse=int, type=(int, ...)
)

## Admin ##

ADMIN_API_KEY = EnvVarSpec(id="ADMIN_API_KEY", is_optional=True, is_secret=True)

#### Validation ####
VALIDATED_ENV_VARS = [
    LOG_LEVEL,
    HTTP_AUTORELOAD,
    HTTP_EXPOSE_ERRORS,
    HTTP_PORT,
    PRODUCT_SERVICE_URL,
    CART_SERVICE_URL,
    NOTIFICATION_SERVICE_URL,
    COLLABORATOR_TIMEOUT_SECONDS,
    SCHEDULER_ENABLED,
    SWEEP_AUCTIONS_INTERVAL_SECONDS,
    SWEEP_NEGOTIATIONS_INTERVAL_SECONDS,
    SWEEP_ENDING_SOON_INTERVAL_SECONDS,
    SWEEP_RECONCILE_INTERVAL_SECONDS,
    SETTLEMENT_GRACE_SECONDS,
    SCHEDULER_LOCK_TTL_SECONDS,
]

def validate() -> bool:
    return env.validate(VALIDATED_ENV_VARS)

#### Getters ####

def get_http_expose_errors() -> bool:
    return env.parse(HTTP_EXPOSE_ERRORS)

def get_log_level() -> str:
    return env.parse(LOG_LEVEL)

def get_admin_api_key() -> str | None:
    return env.parse(ADMIN_API_KEY)

def get_http_conf() -> HttpServerConf:
    return HttpServerConf(
        host=env.parse(HTTP_HOST),
        port=env.parse(HTTP_PORT),
        autoreload=env.parse(HTTP_AUTORELOAD),
    )

def get_collaborators_conf() -> CollaboratorsConf:
    return CollaboratorsConf(
        product_service_url=env.parse(PRODUCT_SERVICE_URL),
        cart_service_url=env.parse(CART_SERVICE_URL),
        notification_service_url=env.parse(NOTIFICATION_SERVICE_URL),
        timeout_seconds=max(0.5, env.parse(COLLABORATOR_TIMEOUT_SECONDS)),
        api_key=env.parse(COLLABORATOR_API_KEY),
    )

def get_scheduler_conf() -> SchedulerConf:
    return SchedulerConf(
        enabled=env.parse(SCHEDULER_ENABLED),
        auctions_interval_seconds=max(1, env.parse(SWEEP_AUCTIONS_INTERVAL_SECONDS)),
        negotiations_interval_seconds=max(1, env.parse(SWEEP_NEGOTIATIONS_INTERVAL_SECONDS)),
        ending_soon_interval_seconds=max(1, env.parse(SWEEP_ENDING_SOON_INTERVAL_SECONDS)),
        reconcile_interval_seconds=max(1, env.parse(SWEEP_RECONCILE_INTERVAL_SECONDS)),
        settlement_grace_seconds=max(0, env.parse(SETTLEMENT_GRACE_SECONDS)),
        lock_ttl_seconds=max(1, env.parse(SCHEDULER_LOCK_TTL_SECONDS)),
    )
