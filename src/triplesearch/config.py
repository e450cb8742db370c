"""
TripleSearch Configuration
==========================

Loads the search configuration from a JSON file and the environment.

The JSON file declares the indexed types:

    {
      "persist_indexes": true,
      "eager_indexing_groups": [[{"name": "public", "variables": []}]],
      "types": [
        {
          "type": "document",
          "on_path": "documents",
          "rdf_type": "http://example.org/Document",
          "properties": {
            "title": "http://purl.org/dc/elements/1.1/title",
            "creator": ["http://purl.org/dc/terms/creator", "http://xmlns.com/foaf/0.1/name"],
            "author": {"via": "http://purl.org/dc/terms/creator",
                       "rdf_type": "http://xmlns.com/foaf/0.1/Person",
                       "properties": {"name": "http://xmlns.com/foaf/0.1/name"}},
            "data": {"via": ["http://example.org/file", "^http://example.org/source"],
                     "attachment_pipeline": "attachment"}
          },
          "mappings": {"properties": {"title": {"type": "text"}}}
        }
      ]
    }

Scalar settings may also come from upper-cased environment variables, which
take precedence over the file. Empty environment values are ignored. The
SPARQL endpoint is read from MU_SPARQL_ENDPOINT.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Annotated, Any, Dict, List, Mapping, Optional, Tuple

from pydantic import AliasChoices, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, NoDecode

from .exceptions import ConfigurationError, UnknownTypeError


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "/config/config.json"

UUID_PREDICATE = "http://mu.semte.ch/vocabularies/core/uuid"
RDF_TYPE = "http://www.w3.org/1999/02/22-rdf-syntax-ns#type"


# ---------------------------------------------------------------------------
# Property schema
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PropertySchema:
    """
    A configured property: a predicate path from the indexed resource.

    Each element of the path is a predicate URI, prefixed with "^" when the
    predicate has to be followed in the inverse direction.
    """

    path: Tuple[str, ...]


@dataclass(frozen=True)
class SimpleProperty(PropertySchema):
    """Literal or URI values found at the end of the path."""


@dataclass(frozen=True)
class NestedProperty(PropertySchema):
    """Related resources, each materialized as a nested document."""

    rdf_type: str = ""
    properties: Mapping[str, PropertySchema] = field(default_factory=dict)


@dataclass(frozen=True)
class AttachmentProperty(PropertySchema):
    """share:// file references whose extracted text is indexed."""

    pipeline: str = "attachment"


@dataclass(frozen=True)
class CompositeProperty:
    """A property of a composite type, optionally renamed per source type."""

    name: str
    mappings: Mapping[str, str] = field(default_factory=dict)

    def source_name(self, source_type: str) -> str:
        return self.mappings.get(source_type, self.name)


@dataclass(frozen=True)
class TypeDefinition:
    """Static schema of one search type."""

    name: str
    on_path: str
    rdf_type: Optional[str]
    properties: Mapping[str, PropertySchema]
    composite_types: Tuple[str, ...] = ()
    composite_properties: Tuple[CompositeProperty, ...] = ()
    mappings: Optional[Dict[str, Any]] = None
    settings: Optional[Dict[str, Any]] = None

    @property
    def is_composite(self) -> bool:
        return bool(self.composite_types)


# ---------------------------------------------------------------------------
# Search configuration
# ---------------------------------------------------------------------------

@dataclass
class SearchConfiguration:
    """Fully parsed service configuration."""

    type_definitions: Dict[str, TypeDefinition]
    batch_size: int = 100
    max_batches: Optional[int] = None
    persist_indexes: bool = False
    additive_indexes: bool = False
    automatic_index_updates: bool = False
    attachments_path_base: str = "/data"
    common_terms_cutoff_frequency: float = 0.001
    update_wait_interval_minutes: float = 8
    number_of_threads: int = 1
    update_handler_threads: int = 1
    maximum_file_size: int = 200 * 1024 * 1024
    eager_indexing_groups: List[List[Dict[str, Any]]] = field(default_factory=list)
    default_index_settings: Dict[str, Any] = field(default_factory=dict)

    # connections and local storage
    elasticsearch_hosts: List[str] = field(default_factory=lambda: ["http://elasticsearch:9200"])
    elasticsearch_api_key: Optional[str] = None
    elasticsearch_username: Optional[str] = None
    elasticsearch_password: Optional[str] = None
    elasticsearch_verify_certs: bool = True
    elastic_read_timeout: int = 180
    sparql_endpoint: str = "http://database:8890/sparql"
    connection_pool_size: int = 10
    connection_pool_timeout: float = 30.0
    tika_url: str = "http://tika:9998"
    update_queue_path: str = "/data/update-queue/queue.json"
    update_persist_interval: float = 60.0
    extraction_cache_path: str = "/cache"

    def type_definition(self, type_name: str) -> TypeDefinition:
        """Look up a type by name."""
        try:
            return self.type_definitions[type_name]
        except KeyError:
            raise UnknownTypeError(f"No type definition found for type '{type_name}'") from None

    def type_for_path(self, on_path: str) -> TypeDefinition:
        """Look up a type by the path it is exposed on."""
        for type_def in self.type_definitions.values():
            if type_def.on_path == on_path:
                return type_def
        raise UnknownTypeError(f"No type definition found for path '{on_path}'")

    def expand_type(self, type_name: str) -> List[TypeDefinition]:
        """
        Return the simple types a type is built from.

        A simple type expands to itself. A composite type expands to one
        definition per source type, with each composite property remapped
        onto the source type's own property schema.

        Raises:
            ConfigurationError: a composite property has no counterpart in
                one of its source types
        """
        type_def = self.type_definition(type_name)
        if not type_def.is_composite:
            return [type_def]

        expanded = []
        for source_type in type_def.composite_types:
            source_def = self.type_definition(source_type)
            properties = {}
            for prop in type_def.composite_properties:
                source_name = prop.source_name(source_type)
                if source_name not in source_def.properties:
                    raise ConfigurationError(
                        f"Composite type '{type_def.name}' maps property '{prop.name}' "
                        f"to '{source_name}', which type '{source_type}' does not define"
                    )
                properties[prop.name] = source_def.properties[source_name]
            expanded.append(TypeDefinition(
                name=source_type,
                on_path=source_def.on_path,
                rdf_type=source_def.rdf_type,
                properties=properties,
                mappings=source_def.mappings,
                settings=source_def.settings
            ))
        return expanded

    def attachment_fields(self, type_name: str) -> List[str]:
        """Names of the top-level properties holding extracted file content."""
        fields = []
        for type_def in self.expand_type(type_name):
            for name, prop in type_def.properties.items():
                if isinstance(prop, AttachmentProperty) and name not in fields:
                    fields.append(name)
        return fields


# ---------------------------------------------------------------------------
# Service settings
# ---------------------------------------------------------------------------

class ServiceSettings(BaseSettings):
    """
    Scalar settings of the service.

    Values from the configuration file are passed in as keyword arguments.
    Upper-cased environment variables override them, and empty variables are
    ignored.
    """

    batch_size: int = 100
    max_batches: Optional[int] = None
    persist_indexes: bool = False
    additive_indexes: bool = False
    automatic_index_updates: bool = False
    attachments_path_base: str = "/data"
    common_terms_cutoff_frequency: float = 0.001
    update_wait_interval_minutes: float = 8
    number_of_threads: int = 1
    update_handler_threads: int = 1
    maximum_file_size: int = 200 * 1024 * 1024

    # Elasticsearch; hosts may be given as a comma-separated list
    elasticsearch_hosts: Annotated[List[str], NoDecode] = ["http://elasticsearch:9200"]
    elasticsearch_api_key: Optional[str] = None
    elasticsearch_username: Optional[str] = None
    elasticsearch_password: Optional[str] = None
    elasticsearch_verify_certs: bool = True
    elastic_read_timeout: int = 180

    sparql_endpoint: str = Field(
        "http://database:8890/sparql",
        validation_alias=AliasChoices("mu_sparql_endpoint", "sparql_endpoint")
    )
    connection_pool_size: int = 10
    connection_pool_timeout: float = 30.0
    tika_url: str = "http://tika:9998"
    update_queue_path: str = "/data/update-queue/queue.json"
    update_persist_interval: float = 60.0
    extraction_cache_path: str = "/cache"

    model_config = {"env_ignore_empty": True, "extra": "ignore"}

    @field_validator("elasticsearch_hosts", mode="before")
    @classmethod
    def split_hosts(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [host.strip() for host in value.split(",") if host.strip()]
        return value

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings
    ):
        # the environment wins over the configuration file
        return env_settings, init_settings


def load_settings(payload: Mapping[str, Any]) -> ServiceSettings:
    """
    Resolve the scalar settings from the configuration file and environment.

    Raises:
        ConfigurationError: if a value has the wrong type
    """
    file_values = {
        name: payload[name] for name in ServiceSettings.model_fields
        if payload.get(name) is not None and payload.get(name) != ""
    }
    try:
        return ServiceSettings(**file_values)
    except ValidationError as e:
        problems = "; ".join(
            f"'{'.'.join(str(part) for part in error['loc'])}': {error['msg']}" for error in e.errors()
        )
        raise ConfigurationError(f"Invalid value for setting {problems}") from e


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _as_path(name: str, value: Any) -> Tuple[str, ...]:
    if isinstance(value, str) and value:
        return (value,)
    if isinstance(value, list) and value and all(isinstance(p, str) and p for p in value):
        return tuple(value)
    raise ConfigurationError(f"Property '{name}' must be a predicate or a non-empty list of predicates")


def parse_property(name: str, value: Any) -> PropertySchema:
    """Turn a configured property into its schema node."""
    if isinstance(value, (str, list)):
        return SimpleProperty(path=_as_path(name, value))
    if isinstance(value, dict):
        path = _as_path(name, value.get("via"))
        if value.get("attachment_pipeline"):
            return AttachmentProperty(path=path, pipeline=value["attachment_pipeline"])
        if value.get("rdf_type"):
            return NestedProperty(
                path=path,
                rdf_type=value["rdf_type"],
                properties=parse_properties(value.get("properties") or {})
            )
    raise ConfigurationError(
        f"Property '{name}' must be a predicate path, a nested object with 'rdf_type' "
        f"or a file with 'attachment_pipeline'"
    )


def parse_properties(properties: Mapping[str, Any]) -> Dict[str, PropertySchema]:
    return {name: parse_property(name, value) for name, value in properties.items()}


def parse_type_definition(raw: Dict[str, Any]) -> TypeDefinition:
    if raw.get("composite_types"):
        return TypeDefinition(
            name=raw["type"],
            on_path=raw["on_path"],
            rdf_type=raw.get("rdf_type"),
            properties={},
            composite_types=tuple(raw["composite_types"]),
            composite_properties=tuple(
                CompositeProperty(name=p["name"], mappings=dict(p.get("mappings") or {}))
                for p in raw["properties"]
            ),
            mappings=raw.get("mappings"),
            settings=raw.get("settings")
        )
    return TypeDefinition(
        name=raw["type"],
        on_path=raw["on_path"],
        rdf_type=raw["rdf_type"],
        properties=parse_properties(raw["properties"]),
        mappings=raw.get("mappings"),
        settings=raw.get("settings")
    )


def validate_type_definitions(types: List[Dict[str, Any]]) -> List[str]:
    """Basic validation of the raw type definitions. Returns error messages."""
    errors = []

    names = [t.get("type") for t in types]
    duplicates = sorted({n for n in names if n is not None and names.count(n) > 1})
    if duplicates:
        errors.append(f"the following types are defined more than once: {duplicates}")

    paths = [t.get("on_path") for t in types]
    duplicates = sorted({p for p in paths if p is not None and paths.count(p) > 1})
    if duplicates:
        errors.append(f"the following paths are defined more than once: {duplicates}")

    for type_def in types:
        name = type_def.get("type")
        for key in ("type", "properties", "on_path"):
            if key not in type_def:
                errors.append(f"invalid type definition for {name}, missing key {key}")
        if "rdf_type" not in type_def and "composite_types" not in type_def:
            errors.append(f"type definition for {name} must specify rdf_type or composite_types")

        if "composite_types" in type_def:
            logger.warning("%s is a composite type, support for composite types is experimental", name)
            undefined = [t for t in type_def["composite_types"] if t not in names]
            if undefined:
                errors.append(f"composite type {name} refers to type(s) {undefined} which don't exist")
            properties = type_def.get("properties")
            if isinstance(properties, list):
                if not all(isinstance(p, dict) and "name" in p for p in properties):
                    errors.append(
                        f"composite type {name} has an invalid property: "
                        f"properties of a composite type should have a field 'name'"
                    )
            else:
                errors.append(f"composite type {name}: properties should be an array")
        elif "properties" in type_def and not isinstance(type_def["properties"], dict):
            errors.append(f"type {name}: properties should be an object")

        if "mappings" in type_def:
            if "properties" not in (type_def["mappings"] or {}):
                errors.append(
                    f"type definition for {name} has an index specific mapping, "
                    f"but the mapping does not have the properties field."
                )
        else:
            logger.warning("field mappings not set for type %s, you may want to add an index specific mapping", name)
    return errors


def validate_eager_indexing_groups(groups: Any) -> List[str]:
    errors = []
    if not isinstance(groups, list):
        return [f"eager_indexing_groups should be an array, got {groups!r}"]
    for group in groups:
        if not isinstance(group, list):
            errors.append(f"invalid eager indexing groups, each group should be an array. {group!r} is not")
            continue
        for access_right in group:
            if not (isinstance(access_right, dict)
                    and access_right.get("name")
                    and isinstance(access_right.get("variables"), list)):
                errors.append(f"invalid eager indexing group: {group!r}.")
    return errors


def validate_configuration(payload: Dict[str, Any]) -> None:
    """
    Validate the raw JSON configuration.

    Raises:
        ConfigurationError: listing every problem found
    """
    errors = []
    if "eager_indexing_groups" in payload:
        errors.extend(validate_eager_indexing_groups(payload["eager_indexing_groups"]))
    if "types" in payload and isinstance(payload["types"], list):
        errors.extend(validate_type_definitions(payload["types"]))
    else:
        errors.append("no type definitions specified, expected field 'types' not found")
    if errors:
        for error in errors:
            logger.error("Invalid configuration: %s", error)
        raise ConfigurationError("invalid config:\n" + "\n".join(errors))


def parse_configuration(payload: Dict[str, Any]) -> SearchConfiguration:
    """
    Build a SearchConfiguration from the parsed JSON file and environment.

    Args:
        payload: Parsed JSON configuration

    Returns:
        The validated configuration

    Raises:
        ConfigurationError: if the configuration is invalid
    """
    validate_configuration(payload)
    settings = load_settings(payload)
    if not settings.persist_indexes:
        logger.warning("persist_indexes is disabled, indexes will be removed from Elasticsearch on restart!")

    type_definitions = {}
    for raw in payload["types"]:
        type_def = parse_type_definition(raw)
        type_definitions[type_def.name] = type_def

    return SearchConfiguration(
        type_definitions=type_definitions,
        eager_indexing_groups=payload.get("eager_indexing_groups") or [],
        default_index_settings=payload.get("default_settings") or {},
        **settings.model_dump()
    )


def load_configuration(path: str = DEFAULT_CONFIG_PATH) -> SearchConfiguration:
    """Load and validate the configuration file at path."""
    with open(path, "r", encoding="utf-8") as f:
        try:
            payload = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Configuration file {path} is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise ConfigurationError(f"Configuration file {path} must contain a JSON object")
    return parse_configuration(payload)
