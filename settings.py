"""Run configuration for the Dari document agent.

Settings are assembled once per run by layering, lowest precedence first:
code defaults, the selected workflow preset, an optional JSON overrides file
written by the desktop shell, environment variables (``.env`` included) and
finally explicit command-line values. The resulting :class:`AgentSettings`
tree is frozen and handed by reference to every component.
"""

from __future__ import annotations

import json
import logging
import math
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from dotenv import load_dotenv

from errors import ConfigurationError

logger = logging.getLogger(__name__)

TRUTHY = {"1", "true", "yes", "on"}
FALSY = {"0", "false", "no", "off"}

DEFAULT_BASE_URL = "https://www.dari.ae/en/"
DEFAULT_APPLICATIONS_URL = "https://www.dari.ae/en/app/applications?type=applications"


@dataclass(frozen=True)
class WorkflowPreset:
    key: str
    title: str
    service_text: str
    service_url: Optional[str] = None
    document_keywords: Tuple[str, ...] = ()


WORKFLOWS: Dict[str, WorkflowPreset] = {
    "site-plan": WorkflowPreset(
        key="site-plan",
        title="Dari Site Plan Agent",
        service_text="Verification Certificate (Unit)",
        service_url="https://www.dari.ae/en/app/services/select-certificates-property",
        document_keywords=("verification certificate", "certificate", "site plan"),
    ),
    "affection-plan": WorkflowPreset(
        key="affection-plan",
        title="Dari Affection Plan Agent",
        service_text="Site Plan",
        document_keywords=("site plan", "affection plan"),
    ),
    "title-deed": WorkflowPreset(
        key="title-deed",
        title="Dari Title Deed Agent",
        service_text="Title Deed Unit",
        document_keywords=("title deed",),
    ),
}


@dataclass(frozen=True)
class NavigationSettings:
    base_url: str = DEFAULT_BASE_URL
    applications_url: str = DEFAULT_APPLICATIONS_URL
    services_menu_text: str = "Services"
    service_text: str = "Verification Certificate (Unit)"
    service_url: Optional[str] = None


@dataclass(frozen=True)
class AccountSwitchSettings:
    enabled: bool = False
    target_account_name: str = ""


@dataclass(frozen=True)
class PaymentSettings:
    enabled: bool = True
    wallet_balance_pattern: str = r"Balance\s*:?\s*ß\s*(\d+(?:\.\d+)?)"
    total_amount_pattern: str = r"Total\s+to\s+be\s+paid\s*ß\s*(\d+(?:\.\d+)?)"


@dataclass(frozen=True)
class PageElements:
    """Natural-language descriptions handed to page intelligence."""

    login_button: str = "Login button in the top right corner"
    uae_pass_login_button: str = "Login with UAE PASS button"
    phone_field: str = "mobile number or Emirates ID input field"
    submit_login_button: str = "Login or Continue button to submit the mobile number"
    services_menu: str = "Services menu in the top navigation bar"
    plot_number_field: str = "Plot Number input field on the left side filter menu"
    show_results_button: str = "Show Results button"
    proceed_button: str = "Proceed button"
    wallet_radio_button: str = "DARI wallet radio button"
    pay_now_button: str = "red Pay now button at the bottom"
    download_button: str = "Download button for the generated document"


@dataclass(frozen=True)
class WaitTimes:
    """All durations in seconds."""

    page_load: float = 3.0
    after_click: float = 2.0
    captcha: float = 20.0
    uae_pass_timeout: float = 180.0
    download_page_timeout: float = 900.0
    dom_settle: float = 1.5


@dataclass(frozen=True)
class DetectionSettings:
    login_indicators: Tuple[str, ...] = ("logout", "profile", "dashboard", "my account")
    auth_url_pattern: str = r"uaepass|staging-id\.uae"
    not_owned_phrases: Tuple[str, ...] = (
        "you don't own any property",
        "you do not own any property",
        "will not be able to proceed",
        "no properties found",
    )
    # only matched against observed result descriptions, never the page body
    no_result_phrases: Tuple[str, ...] = ("no result", "not found")
    error_indicators: Tuple[str, ...] = ("error", "failed", "unsuccessful", "declined")
    processing_indicators: Tuple[str, ...] = ("processing", "please wait", "success", "paid")
    application_id_pattern: str = r"^[A-Z0-9-]{6,}$"
    application_id_fallbacks: Tuple[str, ...] = (
        r"(?i:application\s+id)\s*:?\s*([A-Z0-9-]{6,})",
        r"(?i:reference\s+number)\s*:?\s*([A-Z0-9-]{6,})",
        r"(?i:request\s+id)\s*:?\s*([A-Z0-9-]{6,})",
        r"\bID\s*:?\s*([A-Z0-9]{6,})",
        r"\b(\d{14,})\b",
    )


@dataclass(frozen=True)
class PollSettings:
    transition_interval: float = 3.0
    transition_max_attempts: int = 40
    document_interval: float = 5.0
    # None removes the cap for the document wait.
    document_max_attempts: Optional[int] = 120
    recovery_interval: float = 5.0
    recovery_max_attempts: int = 60


@dataclass(frozen=True)
class RetrySettings:
    max_attempts: int = 3
    delay: float = 2.0
    backoff: float = 2.0


@dataclass(frozen=True)
class AgentSettings:
    workflow: str = "site-plan"
    mobile_number: str = ""
    spreadsheet_path: Optional[Path] = None
    plot_column_index: Optional[int] = None
    download_dir: Path = Path("downloads")
    ledger_path: Path = Path("data/application-history.json")
    reports_dir: Path = Path("reports")
    profile_dir: Path = Path("profiles/dari")
    headless: bool = False
    openai_model: str = "gpt-4o-mini"
    navigation: NavigationSettings = field(default_factory=NavigationSettings)
    account_switching: AccountSwitchSettings = field(default_factory=AccountSwitchSettings)
    payment: PaymentSettings = field(default_factory=PaymentSettings)
    elements: PageElements = field(default_factory=PageElements)
    wait_times: WaitTimes = field(default_factory=WaitTimes)
    detection: DetectionSettings = field(default_factory=DetectionSettings)
    polling: PollSettings = field(default_factory=PollSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)

    @property
    def preset(self) -> WorkflowPreset:
        return WORKFLOWS[self.workflow]


def parse_bool(raw: Any, name: str) -> Optional[bool]:
    """Interpret a config/env toggle, returning None when the value is unrecognised."""
    if isinstance(raw, bool):
        return raw
    if raw is None:
        return None
    normalized = str(raw).strip().lower()
    if normalized in TRUTHY:
        return True
    if normalized in FALSY:
        return False
    logger.warning("  • Unrecognized %s value '%s', keeping the configured default.", name, raw)
    return None


def apply_workflow(settings: AgentSettings, workflow: str) -> AgentSettings:
    preset = WORKFLOWS.get(workflow)
    if preset is None:
        known = ", ".join(sorted(WORKFLOWS))
        raise ConfigurationError(f"Unknown workflow '{workflow}'. Known workflows: {known}")
    navigation = replace(
        settings.navigation,
        service_text=preset.service_text,
        service_url=preset.service_url,
    )
    return replace(settings, workflow=preset.key, navigation=navigation)


def load_overrides_file(path: Optional[Path]) -> Dict[str, Any]:
    if not path:
        return {}
    if not path.exists():
        logger.warning("  • Config overrides file %s does not exist, ignoring.", path)
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8") or "{}")
    except Exception as exc:
        logger.error("❌ Failed to read config overrides %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        logger.error("❌ Config overrides %s must contain a JSON object, ignoring.", path)
        return {}
    return data


def _seconds(value: Any) -> Optional[float]:
    """The desktop shell stores durations in milliseconds."""
    try:
        return float(value) / 1000.0
    except (TypeError, ValueError):
        return None


def apply_overrides(settings: AgentSettings, data: Mapping[str, Any]) -> AgentSettings:
    if not data:
        return settings
    updates: Dict[str, Any] = {}

    if data.get("excelFilePath"):
        updates["spreadsheet_path"] = Path(str(data["excelFilePath"]))
    if data.get("plotColumnIndex") is not None:
        try:
            updates["plot_column_index"] = int(data["plotColumnIndex"])
        except (TypeError, ValueError):
            logger.warning("  • Ignoring non-numeric plotColumnIndex %r", data["plotColumnIndex"])
    if data.get("mobileNumber"):
        updates["mobile_number"] = str(data["mobileNumber"]).strip()
    if data.get("downloadPath"):
        updates["download_dir"] = Path(str(data["downloadPath"]))

    navigation = settings.navigation
    if data.get("serviceName"):
        navigation = replace(navigation, service_text=str(data["serviceName"]))
    if data.get("serviceUrl"):
        navigation = replace(navigation, service_url=str(data["serviceUrl"]))
    updates["navigation"] = navigation

    switching = data.get("accountSwitching") or {}
    if isinstance(switching, dict) and switching:
        enabled = parse_bool(switching.get("enabled"), "accountSwitching.enabled")
        updates["account_switching"] = replace(
            settings.account_switching,
            enabled=settings.account_switching.enabled if enabled is None else enabled,
            target_account_name=str(
                switching.get("targetAccountName") or settings.account_switching.target_account_name
            ),
        )

    payment = data.get("payment") or {}
    if isinstance(payment, dict) and "enabled" in payment:
        enabled = parse_bool(payment.get("enabled"), "payment.enabled")
        if enabled is not None:
            updates["payment"] = replace(settings.payment, enabled=enabled)

    waits = data.get("waitTimes") or {}
    if isinstance(waits, dict) and waits:
        wait_updates: Dict[str, float] = {}
        for key, attr in (
            ("captcha", "captcha"),
            ("uaePassTimeout", "uae_pass_timeout"),
            ("downloadPageTimeout", "download_page_timeout"),
            ("pageLoad", "page_load"),
            ("afterClick", "after_click"),
        ):
            seconds = _seconds(waits.get(key)) if key in waits else None
            if seconds is not None:
                wait_updates[attr] = seconds
        wait_times = replace(settings.wait_times, **wait_updates)
        updates["wait_times"] = wait_times
        if "download_page_timeout" in wait_updates:
            attempts = max(1, math.ceil(wait_times.download_page_timeout / settings.polling.document_interval))
            updates["polling"] = replace(settings.polling, document_max_attempts=attempts)

    return replace(settings, **updates)


def apply_environment(settings: AgentSettings, env: Mapping[str, str]) -> AgentSettings:
    updates: Dict[str, Any] = {}
    mobile = env.get("DARI_MOBILE_NUMBER") or env.get("TAMM_MOBILE_NUMBER")
    if mobile and not settings.mobile_number:
        updates["mobile_number"] = mobile.strip()
    if env.get("DARI_SPREADSHEET"):
        updates["spreadsheet_path"] = Path(env["DARI_SPREADSHEET"]).expanduser()
    if env.get("DOWNLOAD_PATH"):
        updates["download_dir"] = Path(env["DOWNLOAD_PATH"]).expanduser()
    if env.get("DARI_LEDGER_PATH"):
        updates["ledger_path"] = Path(env["DARI_LEDGER_PATH"]).expanduser()
    if env.get("DARI_REPORTS_DIR"):
        updates["reports_dir"] = Path(env["DARI_REPORTS_DIR"]).expanduser()
    if env.get("DARI_PROFILE_DIR"):
        updates["profile_dir"] = Path(env["DARI_PROFILE_DIR"]).expanduser()
    if env.get("DARI_OPENAI_MODEL"):
        updates["openai_model"] = env["DARI_OPENAI_MODEL"].strip()

    headless = parse_bool(env.get("DARI_HEADLESS"), "DARI_HEADLESS")
    if headless is not None:
        updates["headless"] = headless
    payment_enabled = parse_bool(env.get("DARI_PAYMENT_ENABLED"), "DARI_PAYMENT_ENABLED")
    if payment_enabled is not None:
        updates["payment"] = replace(settings.payment, enabled=payment_enabled)

    return replace(settings, **updates)


def apply_cli(settings: AgentSettings, overrides: Mapping[str, Any]) -> AgentSettings:
    """Top-level field overrides from the command line; ``None`` means not given."""
    known = {f.name for f in fields(AgentSettings)}
    updates = {key: value for key, value in overrides.items() if value is not None and key in known}
    unknown = sorted(key for key in overrides if key not in known and key != "payment_enabled")
    if unknown:
        raise ConfigurationError(f"Unknown setting(s): {', '.join(unknown)}")
    settings = replace(settings, **updates)
    payment_enabled = overrides.get("payment_enabled")
    if payment_enabled is not None:
        settings = replace(settings, payment=replace(settings.payment, enabled=bool(payment_enabled)))
    return settings


def load_settings(
    workflow: str = "site-plan",
    *,
    config_path: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
    cli: Optional[Mapping[str, Any]] = None,
    use_dotenv: bool = True,
) -> AgentSettings:
    if env is None:
        if use_dotenv:
            dotenv_path = os.environ.get("DOTENV_CONFIG_PATH")
            if dotenv_path:
                logger.info("Loading .env from: %s", dotenv_path)
                load_dotenv(dotenv_path)
            else:
                load_dotenv()
        env = os.environ

    settings = apply_workflow(AgentSettings(), workflow)
    overrides_path = config_path or (Path(env["AGENT_CONFIG_PATH"]) if env.get("AGENT_CONFIG_PATH") else None)
    settings = apply_overrides(settings, load_overrides_file(overrides_path))
    settings = apply_environment(settings, env)
    settings = apply_cli(settings, cli or {})
    return settings


def validate_settings(settings: AgentSettings, *, require_openai: bool = True) -> None:
    errors = []
    if not settings.mobile_number:
        errors.append("DARI_MOBILE_NUMBER (or mobileNumber in the overrides file) is required")
    if settings.spreadsheet_path is None:
        errors.append("A spreadsheet path is required (--spreadsheet or excelFilePath)")
    if require_openai and not os.environ.get("OPENAI_API_KEY"):
        errors.append("OPENAI_API_KEY is required")
    if settings.polling.document_max_attempts is not None and settings.polling.document_max_attempts < 1:
        errors.append("document_max_attempts must be positive or None")
    if errors:
        raise ConfigurationError("Configuration errors:\n" + "\n".join(errors))
