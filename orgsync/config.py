"""Loading and validation of the export.json script file."""

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .constants import (
    CSV_FILE_ORG_NAME,
    DEFAULT_API_VERSION,
    DEFAULT_BULK_API_THRESHOLD_RECORDS,
    DEFAULT_BULK_API_V1_BATCH_SIZE,
    DEFAULT_BULK_API_VERSION,
    DEFAULT_POLLING_INTERVAL_MS,
    DEFAULT_POLLING_TIMEOUT_MS,
    DEFAULT_REST_API_BATCH_SIZE,
    MAX_QUERY_CHARACTER_LENGTH,
    SCRIPT_FILE_NAME,
)
from .errors import InitializationError
from .models.script import (
    AddonDeclaration,
    DataMedia,
    FieldMappingRule,
    MockField,
    Operation,
    Script,
    ScriptObject,
    ScriptOrg,
)

logger = logging.getLogger(__name__)

ENV_PREFIX = "ORGSYNC"


class ConfigModel(BaseModel):
    """Base model accepting camelCase keys and snake_case names."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class OrgConfig(ConfigModel):
    name: str
    instance_url: Optional[str] = None
    access_token: Optional[str] = None
    api_version: Optional[str] = None


class MockFieldConfig(ConfigModel):
    name: str
    pattern: str
    excluded_regex: str = ""
    included_regex: str = ""
    exclude_names: List[str] = Field(default_factory=list)


class FieldMappingConfig(ConfigModel):
    target_object: str = ""
    source_field: str = ""
    target_field: str = ""


class AddonConfig(ConfigModel):
    module: str
    args: Dict[str, Any] = Field(default_factory=dict)
    description: str = ""


class ScriptObjectConfig(ConfigModel):
    query: str
    operation: str = Operation.READONLY.value
    external_id: str = ""
    delete_query: str = ""
    source_records_filter: str = ""
    target_records_filter: str = ""
    delete_old_data: bool = False
    delete_from_source: bool = False
    delete_by_hierarchy: bool = False
    hard_delete: bool = False
    update_with_mock_data: bool = False
    mock_fields: List[MockFieldConfig] = Field(default_factory=list)
    use_values_mapping: bool = False
    use_field_mapping: bool = False
    field_mapping: List[FieldMappingConfig] = Field(default_factory=list)
    master: bool = True
    excluded: bool = False
    excluded_fields: List[str] = Field(default_factory=list)
    excluded_from_update_fields: List[str] = Field(default_factory=list)
    skip_existing_records: bool = False
    skip_records_comparison: bool = False
    query_all_target: bool = False
    all_or_none: Optional[bool] = None
    always_use_rest_api: bool = False
    always_use_bulk_api: bool = False
    bulk_api_v1_batch_size: Optional[int] = None
    rest_api_batch_size: Optional[int] = None
    before_addons: List[AddonConfig] = Field(default_factory=list)
    after_addons: List[AddonConfig] = Field(default_factory=list)
    before_update_addons: List[AddonConfig] = Field(default_factory=list)
    after_update_addons: List[AddonConfig] = Field(default_factory=list)
    filter_records_addons: List[AddonConfig] = Field(default_factory=list)

    @field_validator("operation")
    @classmethod
    def validate_operation(cls, value: str) -> str:
        return Operation.parse(value).value

    def to_script_object(self) -> ScriptObject:
        """Convert to the runtime object."""
        return ScriptObject(
            query=self.query,
            operation=Operation.parse(self.operation),
            external_id=self.external_id,
            delete_query=self.delete_query,
            source_records_filter=self.source_records_filter,
            target_records_filter=self.target_records_filter,
            delete_old_data=self.delete_old_data,
            delete_from_source=self.delete_from_source,
            delete_by_hierarchy=self.delete_by_hierarchy,
            hard_delete=self.hard_delete,
            update_with_mock_data=self.update_with_mock_data,
            mock_fields=[MockField(**m.model_dump()) for m in self.mock_fields],
            use_values_mapping=self.use_values_mapping,
            use_field_mapping=self.use_field_mapping,
            field_mapping=[FieldMappingRule(**m.model_dump()) for m in self.field_mapping],
            master=self.master,
            excluded=self.excluded,
            excluded_fields=list(self.excluded_fields),
            excluded_from_update_fields=list(self.excluded_from_update_fields),
            skip_existing_records=self.skip_existing_records,
            skip_records_comparison=self.skip_records_comparison,
            query_all_target=self.query_all_target,
            all_or_none=self.all_or_none,
            always_use_rest_api=self.always_use_rest_api,
            always_use_bulk_api=self.always_use_bulk_api,
            bulk_api_v1_batch_size=self.bulk_api_v1_batch_size,
            rest_api_batch_size=self.rest_api_batch_size,
            before_addons=[AddonDeclaration(**a.model_dump()) for a in self.before_addons],
            after_addons=[AddonDeclaration(**a.model_dump()) for a in self.after_addons],
            before_update_addons=[AddonDeclaration(**a.model_dump()) for a in self.before_update_addons],
            after_update_addons=[AddonDeclaration(**a.model_dump()) for a in self.after_update_addons],
            filter_records_addons=[AddonDeclaration(**a.model_dump()) for a in self.filter_records_addons],
        )


class ScriptConfig(ConfigModel):
    objects: List[ScriptObjectConfig] = Field(default_factory=list)
    orgs: List[OrgConfig] = Field(default_factory=list)
    source_org: Optional[str] = None
    target_org: Optional[str] = None
    simulation_mode: bool = False
    all_or_none: bool = False
    bulk_threshold: int = DEFAULT_BULK_API_THRESHOLD_RECORDS
    bulk_api_version: str = DEFAULT_BULK_API_VERSION
    bulk_api_v1_batch_size: int = DEFAULT_BULK_API_V1_BATCH_SIZE
    rest_api_batch_size: int = DEFAULT_REST_API_BATCH_SIZE
    polling_interval_ms: int = DEFAULT_POLLING_INTERVAL_MS
    polling_timeout_ms: int = DEFAULT_POLLING_TIMEOUT_MS
    api_version: str = DEFAULT_API_VERSION
    keep_object_order_while_execute: bool = False
    allow_field_truncation: bool = False
    create_target_csv_files: bool = Field(default=True, alias="createTargetCSVFiles")
    always_use_rest_api: bool = False
    always_use_bulk_api: bool = False
    mock_locale: str = "en_US"
    encryption_passphrase: Optional[str] = None
    prompt_on_missing_parent_objects: bool = False
    query_max_length: int = MAX_QUERY_CHARACTER_LENGTH

    @field_validator("bulk_api_version", "api_version", mode="before")
    @classmethod
    def version_to_text(cls, value: Any) -> str:
        return str(value)

    @field_validator("query_max_length")
    @classmethod
    def validate_query_max_length(cls, value: int) -> int:
        if value < 100:
            raise ValueError("queryMaxLength must be at least 100")
        return value


def env_var_name(org_name: str, setting: str) -> str:
    """Name of the environment variable holding an org setting."""
    key = re.sub(r"[^A-Za-z0-9]+", "_", org_name).strip("_").upper()
    return f"{ENV_PREFIX}_{key}_{setting}"


def resolve_org(config: ScriptConfig, name: Optional[str]) -> Optional[ScriptOrg]:
    """
    Build the runtime org of a name.

    The name ``csvfile`` selects CSV file media. Otherwise the declared org
    of that name supplies the credentials, falling back to the
    ``ORGSYNC_<NAME>_INSTANCE_URL`` and ``ORGSYNC_<NAME>_ACCESS_TOKEN``
    environment variables.
    """
    if not name:
        return None
    if name.lower() == CSV_FILE_ORG_NAME:
        return ScriptOrg(name=CSV_FILE_ORG_NAME, media=DataMedia.FILE, api_version=config.api_version)

    declared = next((o for o in config.orgs if o.name == name), None)
    instance_url = declared.instance_url if declared else None
    access_token = declared.access_token if declared else None
    return ScriptOrg(
        name=name,
        media=DataMedia.ORG,
        instance_url=instance_url or os.environ.get(env_var_name(name, "INSTANCE_URL")),
        access_token=access_token or os.environ.get(env_var_name(name, "ACCESS_TOKEN")),
        api_version=(declared.api_version if declared and declared.api_version else config.api_version),
    )


def parse_script_config(data: Dict[str, Any]) -> ScriptConfig:
    """
    Validate raw script data.

    Raises:
        InitializationError: When the data does not match the script schema
    """
    try:
        return ScriptConfig.model_validate(data)
    except ValidationError as e:
        raise InitializationError(f"Invalid script: {e}") from e


def build_script(
    config: ScriptConfig,
    base_path: Union[str, Path] = ".",
    source_org: Optional[str] = None,
    target_org: Optional[str] = None,
) -> Script:
    """
    Convert a validated config into the runtime script.

    Raises:
        InitializationError: When an object query or operation is invalid
    """
    objects = []
    for index, object_config in enumerate(config.objects):
        try:
            objects.append(object_config.to_script_object())
        except ValueError as e:
            raise InitializationError(f"Invalid object #{index + 1}: {e}") from e

    names = [obj.name for obj in objects if not obj.excluded]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise InitializationError(f"Objects declared more than once: {', '.join(duplicates)}")

    return Script(
        objects=objects,
        source_org=resolve_org(config, source_org or config.source_org),
        target_org=resolve_org(config, target_org or config.target_org),
        simulation_mode=config.simulation_mode,
        all_or_none=config.all_or_none,
        bulk_threshold=config.bulk_threshold,
        bulk_api_version=config.bulk_api_version,
        bulk_api_v1_batch_size=config.bulk_api_v1_batch_size,
        rest_api_batch_size=config.rest_api_batch_size,
        polling_interval_ms=config.polling_interval_ms,
        polling_timeout_ms=config.polling_timeout_ms,
        api_version=config.api_version,
        keep_object_order_while_execute=config.keep_object_order_while_execute,
        allow_field_truncation=config.allow_field_truncation,
        create_target_csv_files=config.create_target_csv_files,
        always_use_rest_api=config.always_use_rest_api,
        always_use_bulk_api=config.always_use_bulk_api,
        mock_locale=config.mock_locale,
        encryption_passphrase=config.encryption_passphrase,
        prompt_on_missing_parent_objects=config.prompt_on_missing_parent_objects,
        query_max_length=config.query_max_length,
        base_path=str(base_path),
    )


def load_script(
    path: Union[str, Path],
    source_org: Optional[str] = None,
    target_org: Optional[str] = None,
) -> Script:
    """
    Load the script file.

    Args:
        path: Directory holding export.json, or the file itself
        source_org: Source org name overriding the script
        target_org: Target org name overriding the script

    Returns:
        Runtime script

    Raises:
        InitializationError: When the file is missing or invalid
    """
    path = Path(path)
    file_path = path / SCRIPT_FILE_NAME if path.is_dir() else path
    if not file_path.exists():
        raise InitializationError(f"Script file not found: {file_path}")

    try:
        with open(file_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise InitializationError(f"Script file {file_path} is not valid JSON: {e}") from e

    config = parse_script_config(data)
    script = build_script(config, file_path.parent, source_org, target_org)
    logger.info(f"Loaded script {file_path} with {len(script.active_objects)} active objects")
    return script
