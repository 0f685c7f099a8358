"""
Import Policy for the reconciliation engine.

This module reads the import policy configuration file and exposes the
password, PIN, file-size, batching, rollback and fetch settings the rest
of the engine works against, along with the header alias table used to map
source columns onto directory fields.
"""

import copy
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from ..models import FieldName

logger = logging.getLogger(__name__)

POLICY_FILE = "import_policy.yaml"

DEFAULT_POLICY: Dict[str, Any] = {
    "password_policy": {
        "min_length": 8,
        "require_uppercase": True,
        "require_lowercase": True,
        "require_digit": True,
        "require_special": False,
        "padding_alphabet": "Xk7mQ2pZ",
        "bcrypt_rounds": 12,
    },
    "pin_policy": {"length": 4},
    "username_policy": {"min_length": 3, "max_length": 50},
    "execution": {"batch_size": 200, "abort_failure_ratio": 0.5},
    "file_limits": {"max_bytes": 10 * 1024 * 1024, "max_rows": 10000},
    "rollback": {"window_hours": 24},
    "history": {"default_limit": 50},
    "fetch": {"connect_timeout_seconds": 10, "read_timeout_seconds": 60},
    "column_aliases": {field.value: [field.value] for field in FieldName},
}


def normalize_header(header: str) -> str:
    """Lowercase a column header and drop spaces, dashes and underscores."""
    return re.sub(r"[\s_\-]+", "", header.strip().lower())


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class ImportPolicy:
    """
    Policy settings for bulk imports.

    Reads configuration from import_policy.yaml, falling back to built-in
    defaults for any section the file leaves out.
    """

    def __init__(
        self,
        config_dir: Optional[Union[str, Path]] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize the import policy.

        Args:
            config_dir: Directory containing import_policy.yaml.
                       Defaults to the engine directory
            overrides: Nested values applied on top of the file
        """
        if config_dir is None:
            config_dir = Path(__file__).parent
        else:
            config_dir = Path(config_dir)

        self.config_dir = config_dir
        self.overrides = overrides or {}
        self.config: Dict[str, Any] = {}

        self._load_configuration()

    def _load_configuration(self):
        """Load the policy from YAML, merged over the defaults."""
        policy_file = self.config_dir / POLICY_FILE
        loaded: Dict[str, Any] = {}
        if policy_file.exists():
            try:
                with open(policy_file, encoding="utf-8") as f:
                    loaded = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                logger.error(f"Failed to load import policy from {policy_file}: {e}")
                raise
            logger.info(f"Loaded import policy from {policy_file}")
        else:
            logger.warning(f"Import policy file not found: {policy_file}, using defaults")

        self.config = _merge(_merge(DEFAULT_POLICY, loaded), self.overrides)
        self._header_lookup = self._build_header_lookup()

    def _build_header_lookup(self) -> Dict[str, FieldName]:
        lookup: Dict[str, FieldName] = {}
        for field in FieldName:
            for alias in self.config["column_aliases"].get(field.value, [field.value]):
                lookup[normalize_header(alias)] = field
        return lookup

    # Column mapping

    def field_for_header(self, header: str) -> Optional[FieldName]:
        return self._header_lookup.get(normalize_header(header))

    # Credentials

    @property
    def min_password_length(self) -> int:
        return int(self.config["password_policy"]["min_length"])

    @property
    def padding_alphabet(self) -> str:
        return str(self.config["password_policy"]["padding_alphabet"])

    @property
    def bcrypt_rounds(self) -> int:
        return int(self.config["password_policy"]["bcrypt_rounds"])

    @property
    def pin_length(self) -> int:
        return int(self.config["pin_policy"]["length"])

    @property
    def username_min_length(self) -> int:
        return int(self.config["username_policy"]["min_length"])

    @property
    def username_max_length(self) -> int:
        return int(self.config["username_policy"]["max_length"])

    def password_problems(self, password: str) -> List[str]:
        """
        Check a password against the policy.

        Returns:
            Human-readable list of unmet requirements (empty when compliant)
        """
        rules = self.config["password_policy"]
        problems = []
        if len(password) < self.min_password_length:
            problems.append(f"at least {self.min_password_length} characters")
        if rules.get("require_uppercase") and not re.search(r"[A-Z]", password):
            problems.append("an uppercase letter")
        if rules.get("require_lowercase") and not re.search(r"[a-z]", password):
            problems.append("a lowercase letter")
        if rules.get("require_digit") and not re.search(r"\d", password):
            problems.append("a digit")
        if rules.get("require_special") and not re.search(r"[^A-Za-z0-9]", password):
            problems.append("a special character")
        return problems

    def is_valid_pin(self, pin: str) -> bool:
        return bool(re.fullmatch(rf"\d{{{self.pin_length}}}", pin))

    # Execution and limits

    @property
    def batch_size(self) -> int:
        return int(self.config["execution"]["batch_size"])

    @property
    def abort_failure_ratio(self) -> float:
        return float(self.config["execution"]["abort_failure_ratio"])

    @property
    def max_file_bytes(self) -> int:
        return int(self.config["file_limits"]["max_bytes"])

    @property
    def max_rows(self) -> int:
        return int(self.config["file_limits"]["max_rows"])

    @property
    def rollback_window_hours(self) -> float:
        return float(self.config["rollback"]["window_hours"])

    @property
    def history_limit(self) -> int:
        return int(self.config["history"]["default_limit"])

    @property
    def fetch_timeouts(self) -> tuple:
        fetch = self.config["fetch"]
        return (float(fetch["connect_timeout_seconds"]), float(fetch["read_timeout_seconds"]))
