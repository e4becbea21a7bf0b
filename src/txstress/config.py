import os
import tomllib
from decimal import Decimal, Inexact, InvalidOperation, localcontext
from pathlib import Path

from eth_utils import is_address, to_checksum_address, to_wei
from pydantic import (
    BaseModel,
    NonNegativeFloat,
    NonNegativeInt,
    PositiveFloat,
    PositiveInt,
    ValidationError,
    field_validator,
)

import txstress.constants as C

pkg_root = Path(__file__).parent
config_file = pkg_root / "config.toml"

cfg = tomllib.loads(config_file.read_text())

# Environment wins over the packaged defaults, CLI flags win over both.
cfg["node"]["rpc_url"] = os.getenv("TXSTRESS_NODE_URL", cfg["node"]["rpc_url"])
cfg["node"]["ws_url"] = os.getenv("TXSTRESS_WS_URL", cfg["node"]["ws_url"]) or None


class ConfigError(ValueError):
    """Run options failed validation."""


class RunConfig(BaseModel):
    mode: C.Mode
    node_url: str = cfg["node"]["rpc_url"]
    ws_url: str | None = cfg["node"]["ws_url"]
    keys: Path
    count: PositiveInt = cfg["run"]["count"]
    to: str = cfg["transaction"]["to"]
    value: str = cfg["transaction"]["value"]
    gas_limit: PositiveInt = cfg["transaction"]["gas_limit"]
    manual_nonce: bool = False
    batch_size: PositiveInt = cfg["run"]["batch_size"]
    delay_ms: NonNegativeInt = cfg["run"]["delay_ms"]
    drain_timeout: NonNegativeFloat | None = cfg["timeout"]["drain"]
    confirm_timeout: NonNegativeFloat | None = None
    watchdog_timeout: PositiveFloat = cfg["timeout"]["watchdog"]
    rpc_timeout: PositiveFloat = cfg["node"]["rpc_timeout"]
    poll_interval: PositiveFloat = cfg["node"]["poll_interval"]
    status_host: str = cfg["status"]["host"]
    status_port: int | None = None

    @field_validator("to")
    @classmethod
    def _checksum_to(cls, v: str) -> str:
        if not is_address(v):
            raise ValueError(f"invalid recipient address: {v!r}")
        return to_checksum_address(v)

    @field_validator("value")
    @classmethod
    def _parse_value(cls, v: str) -> str:
        try:
            amount = Decimal(v)
        except InvalidOperation:
            raise ValueError(f"invalid amount: {v!r}") from None
        if not amount.is_finite() or amount < 0:
            raise ValueError("amount must be a non-negative number")
        if amount > C.MAX_UINT256 // C.WEI_PER_ETHER + 1:
            raise ValueError(f"amount {v!r} is too large")
        with localcontext() as ctx:
            ctx.prec = 999
            ctx.traps[Inexact] = True
            try:
                wei = amount * C.WEI_PER_ETHER
            except Inexact:
                wei = None
        if wei is None or wei != wei.to_integral_value():
            raise ValueError(f"amount {v!r} is not a whole number of wei")
        if wei > C.MAX_UINT256:
            raise ValueError(f"amount {v!r} is too large")
        return v

    @field_validator("node_url")
    @classmethod
    def _http_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            v = "http://" + v
        return v

    @property
    def value_wei(self) -> int:
        return to_wei(Decimal(self.value), "ether")


def build_run_config(**options) -> RunConfig:
    """Validate CLI options into a RunConfig; unset (None) options keep their defaults."""
    given = {k: v for k, v in options.items() if v is not None}
    try:
        return RunConfig(**given)
    except ValidationError as e:
        problems = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
        raise ConfigError(problems) from e
