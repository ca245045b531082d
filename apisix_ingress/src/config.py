from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

APISIX_V2 = "apisix.apache.org/v2"
APISIX_V2BETA3 = "apisix.apache.org/v2beta3"
SUPPORTED_APISIX_VERSIONS = (APISIX_V2, APISIX_V2BETA3)

INGRESS_V1 = "networking/v1"
INGRESS_V1BETA1 = "networking/v1beta1"
SUPPORTED_INGRESS_VERSIONS = (INGRESS_V1, INGRESS_V1BETA1)

INGRESS_CLASS_ANY = "*"


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        admin_url:          APISIX Admin API base URL.
        admin_key:          value sent as ``X-API-KEY``; never logged.
        cluster_name:       logical name the gateway cluster is registered under.
        apisix_version:     ApisixRoute/ApisixUpstream schema generation to watch.
        ingress_version:    networking Ingress generation to watch.
        ingress_class:      class this controller owns, ``*`` for every class.
        watch_namespaces:   explicit namespaces; empty means "use selectors or all".
        namespace_selector: ``key=value`` label selectors for dynamic namespaces.
    """

    admin_url: str = "http://127.0.0.1:9180/apisix/admin"
    admin_key: str = ""
    cluster_name: str = "default"
    admin_timeout_seconds: int = 5
    apisix_version: str = APISIX_V2
    ingress_version: str = INGRESS_V1
    ingress_class: str = "apisix"
    watch_namespaces: tuple[str, ...] = ()
    namespace_selector: tuple[str, ...] = ()
    workers: int = 1
    enable_gateway_api: bool = False
    use_endpoint_slices: bool = False
    ingress_status_address: tuple[str, ...] = ()
    health_port: int = 8080
    health_check_interval_seconds: int = 5
    leader_election_enabled: bool = True
    leader_election_namespace: str = "ingress-apisix"
    leader_election_lease_name: str = "ingress-apisix-leader"
    leader_election_identity: str = "unknown"
    lease_duration_seconds: int = 15
    renew_deadline_seconds: int = 5
    retry_period_seconds: int = 2

    def selector_pairs(self) -> dict[str, str]:
        return parse_selectors(self.namespace_selector)


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _split_list(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(part.strip() for part in value.split(",") if part.strip())


def parse_selectors(selectors: tuple[str, ...] | list[str]) -> dict[str, str]:
    """Parse ``key=value`` selectors into a dict, rejecting malformed entries."""
    result: dict[str, str] = {}
    for selector in selectors:
        key, sep, value = selector.partition("=")
        if not sep or not key.strip():
            raise ConfigError(f"bad namespace selector format: {selector!r}, expected key=value")
        result[key.strip()] = value.strip()
    return result


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment.

    Raises :class:`ConfigError` on the first invalid value so the process
    never starts half-configured against a live gateway.
    """
    values = env if env is not None else os.environ

    admin_url = values.get("APISIX_ADMIN_URL", ControllerConfig.admin_url).strip().rstrip("/")
    if not admin_url:
        raise ConfigError("APISIX_ADMIN_URL must be a non-empty URL")

    apisix_version = values.get("APISIX_ROUTE_VERSION", APISIX_V2)
    if apisix_version not in SUPPORTED_APISIX_VERSIONS:
        raise ConfigError(
            f"APISIX_ROUTE_VERSION must be one of {', '.join(SUPPORTED_APISIX_VERSIONS)}, "
            f"got: {apisix_version!r}"
        )

    ingress_version = values.get("INGRESS_VERSION", INGRESS_V1)
    if ingress_version not in SUPPORTED_INGRESS_VERSIONS:
        raise ConfigError(
            f"INGRESS_VERSION must be one of {', '.join(SUPPORTED_INGRESS_VERSIONS)}, "
            f"got: {ingress_version!r}"
        )

    namespace_selector = _split_list(values.get("NAMESPACE_SELECTOR"))
    parse_selectors(namespace_selector)

    lease_duration = env_int(values, "LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1)
    renew_deadline = env_int(values, "LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 5, minimum=1)
    retry_period = env_int(values, "LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=1)
    if renew_deadline >= lease_duration:
        raise ConfigError(
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS must be smaller than "
            "LEADER_ELECTION_LEASE_DURATION_SECONDS"
        )
    if retry_period >= renew_deadline:
        raise ConfigError(
            "LEADER_ELECTION_RETRY_PERIOD_SECONDS must be smaller than "
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS"
        )

    identity = values.get("LEADER_ELECTION_IDENTITY") or values.get(
        "HOSTNAME", values.get("POD_NAME", "unknown")
    )

    return ControllerConfig(
        admin_url=admin_url,
        admin_key=values.get("APISIX_ADMIN_KEY", ""),
        cluster_name=values.get("APISIX_CLUSTER_NAME", "default") or "default",
        admin_timeout_seconds=env_int(values, "APISIX_ADMIN_TIMEOUT_SECONDS", 5, minimum=1),
        apisix_version=apisix_version,
        ingress_version=ingress_version,
        ingress_class=values.get("INGRESS_CLASS", "apisix") or "apisix",
        watch_namespaces=_split_list(values.get("WATCH_NAMESPACES")),
        namespace_selector=namespace_selector,
        workers=env_int(values, "CONTROLLER_WORKERS", 1, minimum=1, maximum=64),
        enable_gateway_api=parse_bool(values.get("ENABLE_GATEWAY_API")),
        use_endpoint_slices=parse_bool(values.get("USE_ENDPOINT_SLICES")),
        ingress_status_address=_split_list(values.get("INGRESS_STATUS_ADDRESS")),
        health_port=env_int(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
        health_check_interval_seconds=env_int(
            values, "HEALTH_CHECK_INTERVAL_SECONDS", 5, minimum=1
        ),
        leader_election_enabled=parse_bool(
            values.get("LEADER_ELECTION_ENABLED"), default=True
        ),
        leader_election_namespace=values.get("LEADER_ELECTION_NAMESPACE", "ingress-apisix"),
        leader_election_lease_name=values.get(
            "LEADER_ELECTION_LEASE_NAME", "ingress-apisix-leader"
        ),
        leader_election_identity=identity,
        lease_duration_seconds=lease_duration,
        renew_deadline_seconds=renew_deadline,
        retry_period_seconds=retry_period,
    )
