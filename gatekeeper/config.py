"""
Gateway configuration.

Everything comes from environment variables, read once at startup into an
immutable ``GatewayConfig`` that the request handler only ever reads.

    GATEKEEPER_BINDINGS           name=url[,name=url...]  (mysql://, sqlite://, https://)
    GATEKEEPER_DEFAULT_BINDING    binding used when a request names none
    GATEKEEPER_MULTI_BINDING      honour "targetBinding" in requests (0/1)
    GATEKEEPER_ALLOWED_VERBS      comma list of permitted leading keywords
    GATEKEEPER_DENIED_KEYWORDS    comma list of destructive keywords ("" disables)
    GATEKEEPER_DENY_MATCH         word | substring
    GATEKEEPER_EXECUTE_METHOD     HTTP verb that submits statements
    GATEKEEPER_CORS_ORIGINS       comma list, "*" for any origin
    GATEKEEPER_CORS_HEADERS       comma list of allowed request headers
    GATEKEEPER_CORS_MAX_AGE       preflight cache seconds
    GATEKEEPER_STATEMENT_TIMEOUT  seconds before a statement is abandoned
    GATEKEEPER_API_KEY            require this key when set
    GATEKEEPER_MAX_BODY_BYTES     request body cap
    GATEKEEPER_HOST / _PORT       listen address
    GATEKEEPER_PRESET             proxy | guarded, a known policy variant

Without GATEKEEPER_BINDINGS a single "default" MySQL binding is built from
MYSQL_HOST, MYSQL_PORT, MYSQL_DB, MYSQL_USER and MYSQL_PASS.
"""
import os
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Mapping, Optional

from gatekeeper.bindings import MySQLBinding, parse_bindings
from gatekeeper.errors import ConfigError

DEFAULT_ALLOWED_VERBS = frozenset({"select", "insert", "update", "explain"})
DEFAULT_DENIED_KEYWORDS = frozenset({"delete", "drop", "truncate", "alter"})
DENY_MATCH_MODES = ("word", "substring")


@dataclass(frozen=True)
class GatewayConfig:
    bindings: Mapping = field(default_factory=dict)
    default_binding: Optional[str] = None
    supports_multiple_bindings: bool = False
    allowed_verbs: frozenset = DEFAULT_ALLOWED_VERBS
    denied_keywords: frozenset = DEFAULT_DENIED_KEYWORDS
    deny_match: str = "word"
    execute_method: str = "POST"
    cors_origins: tuple = ("*",)
    cors_allow_headers: tuple = ("Content-Type", "Authorization")
    cors_max_age: int = 86400
    statement_timeout: float = 10.0
    api_key: Optional[str] = field(default=None, repr=False)
    max_body_bytes: int = 1_048_576
    host: str = "0.0.0.0"
    port: int = 80

    def __post_init__(self):
        # frozen: normalise through object.__setattr__
        set_ = object.__setattr__
        set_(self, "bindings", MappingProxyType(dict(self.bindings)))
        set_(self, "allowed_verbs", frozenset(v.strip().lower() for v in self.allowed_verbs if v.strip()))
        set_(self, "denied_keywords", frozenset(k.strip().lower() for k in self.denied_keywords if k.strip()))
        set_(self, "execute_method", self.execute_method.strip().upper())
        set_(self, "cors_origins", tuple(self.cors_origins))
        set_(self, "cors_allow_headers", tuple(self.cors_allow_headers))

        if self.default_binding is None and not self.supports_multiple_bindings and self.bindings:
            set_(self, "default_binding", next(iter(self.bindings)))

        if not self.allowed_verbs:
            raise ConfigError("at least one allowed verb is required")
        if self.deny_match not in DENY_MATCH_MODES:
            raise ConfigError(f"deny_match must be one of {DENY_MATCH_MODES}, got {self.deny_match!r}")
        if self.execute_method in ("", "OPTIONS"):
            raise ConfigError(f"invalid execute method {self.execute_method!r}")
        if self.default_binding is not None and self.default_binding not in self.bindings:
            raise ConfigError(f"default binding {self.default_binding!r} is not configured")
        if self.statement_timeout <= 0:
            raise ConfigError("statement timeout must be positive")
        if self.max_body_bytes <= 0:
            raise ConfigError("max body size must be positive")

    @property
    def allow_methods(self) -> str:
        return f"{self.execute_method}, OPTIONS"

    @classmethod
    def preset(cls, name: str, **overrides) -> "GatewayConfig":
        """Configurations reproducing the known handler variants."""
        try:
            base = PRESETS[name]
        except KeyError:
            raise ConfigError(f"unknown preset {name!r}") from None
        return cls(**{**base, **overrides})

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "GatewayConfig":
        env = os.environ if environ is None else environ

        spec = env.get("GATEKEEPER_BINDINGS", "").strip()
        if spec:
            bindings = parse_bindings(spec, env)
        else:
            bindings = {
                "default": MySQLBinding(
                    name="default",
                    host=env.get("MYSQL_HOST", "localhost"),
                    port=_int(env, "MYSQL_PORT", 3306),
                    database=env.get("MYSQL_DB", ""),
                    user=env.get("MYSQL_USER", "app"),
                    password=env.get("MYSQL_PASS", ""),
                )
            }

        # unset: first binding; set but blank: requests must name one
        if "GATEKEEPER_DEFAULT_BINDING" in env:
            default_binding = env["GATEKEEPER_DEFAULT_BINDING"].strip() or None
        else:
            default_binding = next(iter(bindings))

        config = cls(
            bindings=bindings,
            default_binding=default_binding,
            supports_multiple_bindings=_bool(env, "GATEKEEPER_MULTI_BINDING", False),
            allowed_verbs=_csv(env, "GATEKEEPER_ALLOWED_VERBS", DEFAULT_ALLOWED_VERBS),
            denied_keywords=_csv(env, "GATEKEEPER_DENIED_KEYWORDS", DEFAULT_DENIED_KEYWORDS),
            deny_match=env.get("GATEKEEPER_DENY_MATCH", "word").strip().lower(),
            execute_method=env.get("GATEKEEPER_EXECUTE_METHOD", "POST"),
            cors_origins=tuple(_csv(env, "GATEKEEPER_CORS_ORIGINS", ("*",), keep_case=True)),
            cors_allow_headers=tuple(
                _csv(env, "GATEKEEPER_CORS_HEADERS", ("Content-Type", "Authorization"), keep_case=True)
            ),
            cors_max_age=_int(env, "GATEKEEPER_CORS_MAX_AGE", 86400),
            statement_timeout=_float(env, "GATEKEEPER_STATEMENT_TIMEOUT", 10.0),
            api_key=env.get("GATEKEEPER_API_KEY") or None,
            max_body_bytes=_int(env, "GATEKEEPER_MAX_BODY_BYTES", 1_048_576),
            host=env.get("GATEKEEPER_HOST", "0.0.0.0"),
            port=_int(env, "GATEKEEPER_PORT", 80),
        )
        preset = env.get("GATEKEEPER_PRESET", "").strip()
        if preset:
            if preset not in PRESETS:
                raise ConfigError(f"unknown preset {preset!r}")
            # explicit variables win over the preset
            overrides = {k: v for k, v in PRESETS[preset].items() if _PRESET_ENV[k] not in env}
            config = replace(config, **overrides)
        return config


PRESETS = {
    # plain proxy: verb allow-list only
    "proxy": {
        "allowed_verbs": frozenset({"select", "insert", "update", "explain"}),
        "denied_keywords": frozenset(),
        "cors_allow_headers": ("Content-Type",),
    },
    # allow-list plus destructive keyword scan anywhere in the text
    "guarded": {
        "allowed_verbs": frozenset({"select", "insert", "update"}),
        "denied_keywords": frozenset({"delete", "drop", "truncate", "alter"}),
        "deny_match": "substring",
    },
}

_PRESET_ENV = {
    "allowed_verbs": "GATEKEEPER_ALLOWED_VERBS",
    "denied_keywords": "GATEKEEPER_DENIED_KEYWORDS",
    "deny_match": "GATEKEEPER_DENY_MATCH",
    "cors_allow_headers": "GATEKEEPER_CORS_HEADERS",
}


def _csv(env, key, default, keep_case=False):
    raw = env.get(key)
    if raw is None:
        return default
    items = [item.strip() for item in raw.split(",") if item.strip()]
    return items if keep_case else [item.lower() for item in items]


def _bool(env, key, default: bool) -> bool:
    raw = env.get(key)
    if raw is None or not raw.strip():
        return default
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"{key} must be a boolean, got {raw!r}")


def _int(env, key, default: int) -> int:
    raw = env.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from None


def _float(env, key, default: float) -> float:
    raw = env.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from None
