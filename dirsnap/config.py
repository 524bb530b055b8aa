from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Union

import yaml

from .constants import DEFAULT_CHECKSUM_ALGORITHM, SUPPORTED_CHECKSUM_ALGORITHMS
from .errors import ConfigError, DirsnapError, ErrorKind
from .snapshot import Outcome, Status
from .verify import normalize_algorithm


logger = logging.getLogger(__name__)


@dataclass
class Config:
    """Settings shared by the builders and the command line.

    Relative ``archive_dir_path`` / ``backup_dir_path`` values are resolved
    against the source being snapshotted, not the process working directory.
    """

    archive_dir_path: str = "../.bkpdir"
    use_current_dir_name: bool = True
    exclude_patterns: List[str] = field(default_factory=lambda: [".git/", "vendor/"])

    verify_on_create: bool = False
    checksum_algorithm: str = DEFAULT_CHECKSUM_ALGORITHM

    backup_dir_path: str = "../.bkpdir"
    use_current_dir_name_for_files: bool = True

    # Exit codes, directory operations
    status_created_archive: int = 0
    status_directory_is_identical_to_existing_archive: int = 0
    status_failed_to_create_archive_directory: int = 31
    status_archive_already_exists: int = 32
    status_directory_not_found: int = 20
    status_invalid_directory_type: int = 21
    status_permission_denied: int = 22
    status_disk_full: int = 30
    status_config_error: int = 10

    # Exit codes, file operations
    status_created_backup: int = 0
    status_file_is_identical_to_existing_backup: int = 0
    status_failed_to_create_backup_directory: int = 31
    status_backup_already_exists: int = 32
    status_file_not_found: int = 20
    status_invalid_file_type: int = 21

    status_verification_failed: int = 40
    status_cancelled: int = 130
    status_internal_error: int = 1

    def validate(self) -> "Config":
        algo = normalize_algorithm(self.checksum_algorithm)
        if algo not in SUPPORTED_CHECKSUM_ALGORITHMS:
            raise ConfigError(f"unsupported checksum algorithm: {self.checksum_algorithm}", operation="load config")
        self.checksum_algorithm = algo
        if not self.archive_dir_path:
            raise ConfigError("archive_dir_path must not be empty", operation="load config")
        if not self.backup_dir_path:
            raise ConfigError("backup_dir_path must not be empty", operation="load config")
        return self

    def exit_code_for(self, result: Union[DirsnapError, Status, Outcome, None], *, file_mode: bool = False) -> int:
        """Process exit code for an outcome, a status or a classified error."""
        if isinstance(result, Outcome):
            result = result.status
        if result is None:
            return self.status_created_backup if file_mode else self.status_created_archive
        if isinstance(result, Status):
            if result is Status.IDENTICAL:
                return self.status_file_is_identical_to_existing_backup if file_mode else self.status_directory_is_identical_to_existing_archive
            return self.status_created_backup if file_mode else self.status_created_archive
        kind = getattr(result, "kind", ErrorKind.INTERNAL)
        if kind is ErrorKind.NOT_FOUND:
            return self.status_file_not_found if file_mode else self.status_directory_not_found
        if kind is ErrorKind.INVALID_TYPE:
            return self.status_invalid_file_type if file_mode else self.status_invalid_directory_type
        if kind is ErrorKind.DIRECTORY_CREATION_FAILED:
            return self.status_failed_to_create_backup_directory if file_mode else self.status_failed_to_create_archive_directory
        if kind is ErrorKind.ALREADY_EXISTS:
            return self.status_backup_already_exists if file_mode else self.status_archive_already_exists
        return {
            ErrorKind.PERMISSION_DENIED: self.status_permission_denied,
            ErrorKind.DISK_FULL: self.status_disk_full,
            ErrorKind.CONFIG_ERROR: self.status_config_error,
            ErrorKind.CANCELLED: self.status_cancelled,
            ErrorKind.VERIFICATION_FAILED: self.status_verification_failed,
        }.get(kind, self.status_internal_error)


_FIELD_TYPES = {f.name: f.type for f in dataclasses.fields(Config)}
_NESTED = {"verification": ("verify_on_create", "checksum_algorithm")}


def _check_type(key: str, value: Any) -> Any:
    expected = _FIELD_TYPES[key]
    if expected == "bool":
        if not isinstance(value, bool):
            raise ConfigError(f"{key} must be a boolean, got {value!r}", operation="load config")
    elif expected == "int":
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"{key} must be an integer, got {value!r}", operation="load config")
    elif expected == "str":
        if not isinstance(value, str):
            raise ConfigError(f"{key} must be a string, got {value!r}", operation="load config")
    elif expected.startswith("List"):
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise ConfigError(f"{key} must be a list of strings", operation="load config")
        value = list(value)
    return value


def config_from_dict(data: Dict[str, Any]) -> Config:
    """Build a :class:`Config` from a parsed mapping.

    The ``verification`` block may be nested (as in the YAML file) or its keys
    given at top level. Unknown keys are rejected.
    """
    if not isinstance(data, dict):
        raise ConfigError("configuration must be a mapping", operation="load config")
    flat: Dict[str, Any] = {}
    for key, value in data.items():
        if key in _NESTED:
            if value is None:
                continue
            if not isinstance(value, dict):
                raise ConfigError(f"{key} must be a mapping", operation="load config")
            for sub, sub_value in value.items():
                if sub not in _NESTED[key]:
                    raise ConfigError(f"unknown configuration key: {key}.{sub}", operation="load config")
                flat[sub] = _check_type(sub, sub_value)
        elif key in _FIELD_TYPES:
            flat[key] = _check_type(key, value)
        else:
            raise ConfigError(f"unknown configuration key: {key}", operation="load config")
    return Config(**flat).validate()


def load_config(path: Union[str, os.PathLike]) -> Config:
    path = os.fspath(path)
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except FileNotFoundError as exc:
        raise ConfigError("configuration file not found", operation="load config", path=path) from exc
    except OSError as exc:
        raise ConfigError("failed to read configuration", operation="load config", path=path) from exc
    except yaml.YAMLError as exc:
        raise ConfigError("invalid YAML", operation="load config", path=path) from exc
    if data is None:
        data = {}
    try:
        config = config_from_dict(data)
    except ConfigError as exc:
        exc.path = path
        raise
    logger.debug("loaded configuration from %s", path)
    return config
