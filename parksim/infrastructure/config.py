"""
Configuration loader with Pydantic validation.

Supports:
- YAML file loading
- Environment variable overrides for deployment settings
- Per-service sections (valet, delivery, impound, violations, reserved)
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class TipLevel(BaseModel):
    """A tip option: pays `amount` extra to scale wait time by `multiplier`."""

    multiplier: float = 1.0
    amount: int = 0

    @field_validator("multiplier")
    @classmethod
    def validate_multiplier(cls, v: float) -> float:
        if not 0 < v <= 1:
            raise ValueError("tip multiplier must be between 0 and 1")
        return v

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: int) -> int:
        if v < 0:
            raise ValueError("tip amount must be non-negative")
        return v


def _tip_table(small: int, medium: int, large: int) -> dict[str, TipLevel]:
    return {
        "none": TipLevel(multiplier=1.0, amount=0),
        "small": TipLevel(multiplier=0.75, amount=small),
        "medium": TipLevel(multiplier=0.5, amount=medium),
        "large": TipLevel(multiplier=0.25, amount=large),
    }


class SessionConfig(BaseModel):
    """Timing and refund rules shared by every session-based service."""

    min_delay_seconds: float = 5.0
    cancel_grace_seconds: float = 30.0
    cancel_refund_ratio: float = 0.75
    stale_after_seconds: float = 60.0  # Overdue sessions the sweeper completes
    sweep_interval_seconds: float = 30.0
    refund_account: str = "bank"

    @field_validator("min_delay_seconds", "sweep_interval_seconds")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("cancel_refund_ratio")
    @classmethod
    def validate_ratio(cls, v: float) -> float:
        if not 0 <= v <= 1:
            raise ValueError("cancel_refund_ratio must be between 0 and 1")
        return v


class ValetLocation(BaseModel):
    """A valet stand and the spots its drivers park into."""

    id: str
    name: str = ""
    spots: int = 4
    coords: tuple[float, float, float] = (0.0, 0.0, 0.0)
    retrieval_point: tuple[float, float, float] | None = None

    @field_validator("spots")
    @classmethod
    def validate_spots(cls, v: int) -> int:
        if v < 1:
            raise ValueError("a valet location needs at least one spot")
        return v


class ValetConfig(BaseModel):
    """Valet service parameters."""

    enabled: bool = True
    base_price: int = 100
    retrieval_price: int = 50
    park_tips: dict[str, TipLevel] = Field(default_factory=lambda: _tip_table(50, 100, 200))
    retrieve_tips: dict[str, TipLevel] = Field(default_factory=lambda: _tip_table(25, 50, 100))
    base_park_time: float = 30.0  # Seconds
    base_retrieve_time: float = 45.0
    vip_priority_bonus: float = 0.5  # VIPs wait 50% less
    max_queue_per_location: int = 10
    vip_rank: int = 1
    standard_rank: int = 10
    payment_accounts: list[str] = Field(default_factory=lambda: ["cash", "bank"])
    locations: list[ValetLocation] = Field(
        default_factory=lambda: [
            ValetLocation(id="pillbox", name="Pillbox Hill Valet", spots=6),
            ValetLocation(id="vinewood", name="Vinewood Valet", spots=4),
        ]
    )

    @field_validator("vip_priority_bonus")
    @classmethod
    def validate_bonus(cls, v: float) -> float:
        if not 0 <= v < 1:
            raise ValueError("vip_priority_bonus must be in [0, 1)")
        return v

    @field_validator("max_queue_per_location")
    @classmethod
    def validate_queue(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_queue_per_location must be at least 1")
        return v


class DeliveryTier(BaseModel):
    """Benefits attached to a VIP membership tier."""

    enabled: bool = True
    max_per_hour: int = 2  # -1 = unlimited
    discount: float = 0.0
    rush_available: bool = False
    npc_driver: bool = False
    priority_minutes: int = 0

    @field_validator("discount")
    @classmethod
    def validate_discount(cls, v: float) -> float:
        if not 0 <= v < 1:
            raise ValueError("discount must be in [0, 1)")
        return v


def _default_tiers() -> dict[str, DeliveryTier]:
    return {
        "none": DeliveryTier(max_per_hour=2),
        "bronze": DeliveryTier(max_per_hour=3, discount=0.10, rush_available=True, priority_minutes=1),
        "silver": DeliveryTier(
            max_per_hour=5, discount=0.20, rush_available=True, npc_driver=True, priority_minutes=2
        ),
        "gold": DeliveryTier(
            max_per_hour=10, discount=0.35, rush_available=True, npc_driver=True, priority_minutes=3
        ),
        "platinum": DeliveryTier(
            max_per_hour=-1, discount=0.50, rush_available=True, npc_driver=True, priority_minutes=5
        ),
    }


class DeliveryConfig(BaseModel):
    """Vehicle delivery parameters."""

    enabled: bool = True
    base_cost: int = 500
    standard_minutes: int = 5
    rush_minutes: int = 2
    rush_multiplier: float = 2.0
    priority_bonus: float = 0.0
    tips: dict[str, TipLevel] = Field(default_factory=lambda: _tip_table(50, 100, 200))
    job_discounts: dict[str, float] = Field(default_factory=lambda: {"mechanic": 0.15})
    tiers: dict[str, DeliveryTier] = Field(default_factory=_default_tiers)
    payment_accounts: list[str] = Field(default_factory=lambda: ["bank", "cash"])
    spawn_distance: float = 12.0

    @model_validator(mode="after")
    def validate_tiers(self) -> "DeliveryConfig":
        if "none" not in self.tiers:
            raise ValueError("delivery tiers must define 'none'")
        return self


class ImpoundReason(BaseModel):
    fee: int
    label: str


class ImpoundConfig(BaseModel):
    """Impound lot parameters."""

    base_fee: int = 500
    reasons: dict[str, ImpoundReason] = Field(
        default_factory=lambda: {
            "parking": ImpoundReason(fee=250, label="Illegal Parking"),
            "abandoned": ImpoundReason(fee=500, label="Abandoned Vehicle"),
            "traffic": ImpoundReason(fee=750, label="Traffic Violation"),
            "crime": ImpoundReason(fee=1500, label="Criminal Activity"),
            "police": ImpoundReason(fee=2500, label="Police Seizure"),
        }
    )
    daily_fee_increase: int = 100
    max_daily_fees: int = 10  # Cap at 10 days of fees
    payment_accounts: list[str] = Field(default_factory=lambda: ["bank", "cash"])


class ViolationType(BaseModel):
    fine: int
    label: str
    points: int = 0


class ViolationsConfig(BaseModel):
    """Parking ticket parameters."""

    auto_ticket: bool = True
    types: dict[str, ViolationType] = Field(
        default_factory=lambda: {
            "expired_meter": ViolationType(fine=75, label="Expired Meter"),
            "no_parking": ViolationType(fine=150, label="No Parking Zone"),
            "fire_lane": ViolationType(fine=250, label="Fire Lane Violation"),
            "handicap": ViolationType(fine=500, label="Handicap Zone Violation", points=1),
            "double_parked": ViolationType(fine=200, label="Double Parked"),
            "blocking": ViolationType(fine=300, label="Blocking Traffic", points=1),
            "hydrant": ViolationType(fine=350, label="Fire Hydrant Violation"),
        }
    )
    grace_period_hours: float = 24.0
    late_fee_multiplier: float = 1.5
    max_unpaid_tickets: int = 5
    authorized_jobs: list[str] = Field(
        default_factory=lambda: ["police", "sheriff", "parking_enforcement"]
    )
    dismiss_jobs: list[str] = Field(default_factory=lambda: ["judge", "lawyer"])
    payment_accounts: list[str] = Field(default_factory=lambda: ["bank", "cash"])

    @field_validator("late_fee_multiplier")
    @classmethod
    def validate_late_fee(cls, v: float) -> float:
        if v < 1:
            raise ValueError("late_fee_multiplier must be at least 1")
        return v


class ReservedSpotConfig(BaseModel):
    id: str
    name: str = ""
    type: str = "vip"  # vip, job, business, rental
    coords: tuple[float, float, float] = (0.0, 0.0, 0.0)
    required_job: str | None = None
    required_grade: int | None = None
    require_on_duty: bool = False
    business_id: str | None = None

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if v not in ("vip", "job", "business", "rental"):
            raise ValueError(f"unknown reserved spot type: {v}")
        return v


class ReservedConfig(BaseModel):
    """Reserved spot parameters."""

    enabled: bool = True
    rental_price_per_hour: int = 50
    max_rental_hours: int = 24
    vip_discounts: dict[str, float] = Field(
        default_factory=lambda: {
            "bronze": 0.10,
            "silver": 0.20,
            "gold": 0.35,
            "platinum": 0.50,
        }
    )
    payment_accounts: list[str] = Field(default_factory=lambda: ["bank", "cash"])
    spots: list[ReservedSpotConfig] = Field(default_factory=list)


def _enforcement_grades(
    ticket: int, impound: int, criminal: int, release: int, dismiss: int
) -> dict[str, int]:
    return {
        "issueTicket": ticket,
        "checkMeters": ticket,
        "bootVehicle": criminal,
        "impoundVehicle": impound,
        "impoundCriminal": criminal,
        "releaseImpound": release,
        "viewTicketHistory": ticket,
        "dismissTicket": dismiss,
    }


class PermissionsConfig(BaseModel):
    """Enforcement job → action → minimum grade."""

    enforcement_jobs: dict[str, dict[str, int]] = Field(
        default_factory=lambda: {
            "police": _enforcement_grades(1, 3, 2, 4, 5),
            "lspd": _enforcement_grades(1, 3, 2, 4, 5),
            "sheriff": _enforcement_grades(1, 3, 2, 4, 5),
            "bcso": _enforcement_grades(1, 3, 2, 4, 5),
            "sasp": _enforcement_grades(1, 2, 1, 3, 4),
            "highway": _enforcement_grades(0, 1, 0, 2, 3),
            "ranger": _enforcement_grades(1, 3, 2, 4, 5),
        }
    )
    require_on_duty: bool = True
    impound_reasons: dict[str, str] = Field(
        default_factory=lambda: {
            "parking": "impoundVehicle",
            "abandoned": "impoundVehicle",
            "traffic": "impoundVehicle",
            "crime": "impoundCriminal",
            "police": "impoundCriminal",
        }
    )


class InsuranceConfig(BaseModel):
    """Impound discount per insurance tier."""

    discounts: dict[str, float] = Field(
        default_factory=lambda: {
            "basic": 0.10,
            "standard": 0.25,
            "premium": 0.50,
            "platinum": 0.75,
            "full": 1.0,
        }
    )


class ObservabilityConfig(BaseModel):
    """Logging configuration."""

    log_level: str = "INFO"
    log_format: str = "json"  # json, text or clean

    @field_validator("log_format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        if v not in ("json", "text", "clean"):
            raise ValueError("log_format must be json, text or clean")
        return v


class EnvSettings(BaseSettings):
    """
    Deployment overrides read from the environment.

    PARKSIM_ENVIRONMENT, PARKSIM_CONFIG, PARKSIM_LOG_LEVEL, PARKSIM_LOG_FORMAT.
    """

    model_config = SettingsConfigDict(env_prefix="PARKSIM_", case_sensitive=False)

    environment: str | None = None
    config: str | None = None
    log_level: str | None = None
    log_format: str | None = None


class AppConfig(BaseModel):
    """Complete application configuration."""

    config_version: str = "1.0.0"
    environment: str = "local"

    sessions: SessionConfig = Field(default_factory=SessionConfig)
    valet: ValetConfig = Field(default_factory=ValetConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    impound: ImpoundConfig = Field(default_factory=ImpoundConfig)
    violations: ViolationsConfig = Field(default_factory=ViolationsConfig)
    reserved: ReservedConfig = Field(default_factory=ReservedConfig)
    permissions: PermissionsConfig = Field(default_factory=PermissionsConfig)
    insurance: InsuranceConfig = Field(default_factory=InsuranceConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def diff_from_defaults(self) -> dict[str, Any]:
        """
        Get configuration differences from defaults.

        Useful for logging what's been customized.
        """
        defaults = AppConfig()
        current = self.model_dump()
        default_dict = defaults.model_dump()

        def diff_dict(d1: dict, d2: dict, path: str = "") -> dict:
            differences = {}
            for key in set(d1.keys()) | set(d2.keys()):
                full_key = f"{path}.{key}" if path else key
                v1 = d1.get(key)
                v2 = d2.get(key)

                if isinstance(v1, dict) and isinstance(v2, dict):
                    nested = diff_dict(v1, v2, full_key)
                    if nested:
                        differences.update(nested)
                elif v1 != v2:
                    differences[full_key] = {"current": v1, "default": v2}

            return differences

        return diff_dict(current, default_dict)


def load_yaml_config(path: Path) -> dict[str, Any]:
    """Load configuration from YAML file."""
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dictionaries."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config(
    config_path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> AppConfig:
    """
    Load configuration from YAML file with environment overrides.

    Priority (highest to lowest):
    1. Environment variables (PARKSIM_*)
    2. Explicit overrides
    3. Specified config file (or PARKSIM_CONFIG)
    4. Defaults
    """
    env = EnvSettings()
    config_dict: dict[str, Any] = {}

    path_value = config_path or env.config
    if path_value:
        config_dict = load_yaml_config(Path(path_value))

    if overrides:
        config_dict = deep_merge(config_dict, overrides)

    env_overrides: dict[str, Any] = {}
    if env.environment:
        env_overrides["environment"] = env.environment
    observability = {}
    if env.log_level:
        observability["log_level"] = env.log_level
    if env.log_format:
        observability["log_format"] = env.log_format
    if observability:
        env_overrides["observability"] = observability

    return AppConfig(**deep_merge(config_dict, env_overrides))


# Global config instance (set by init_config)
_config: AppConfig | None = None


def get_config() -> AppConfig:
    """Get the global configuration."""
    if _config is None:
        raise RuntimeError("Configuration not loaded. Call init_config() first.")
    return _config


def init_config(config_path: str | Path | None = None) -> AppConfig:
    """Initialize global configuration."""
    global _config
    _config = load_config(config_path)
    return _config
