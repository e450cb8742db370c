"""
TripleSearch Document Builder
=============================

Materializes the JSON document to index for one resource.

For every configured property one SELECT query follows the property path
from the resource. The values found are turned into JSON with a fixed
denumeration rule:

    no value          -> None
    exactly one value -> the value itself
    several values    -> a list of values

Nested properties recurse into related resources using their own schema;
attachment properties read share:// files from disk and index their
extracted text. All queries are executed within the authorization context
the builder was created for.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .authorization import AuthorizationContext
from .config import (
    UUID_PREDICATE,
    AttachmentProperty,
    NestedProperty,
    PropertySchema,
    SimpleProperty,
)
from .exceptions import ExtractionError
from .sparql import SparqlClient, escape_uri, make_predicate_path
from .tika import TextExtractor


logger = logging.getLogger(__name__)

XSD = "http://www.w3.org/2001/XMLSchema#"

INTEGER_TYPES = frozenset(XSD + t for t in (
    "integer", "int", "long", "short", "byte",
    "nonNegativeInteger", "nonPositiveInteger", "positiveInteger", "negativeInteger",
    "unsignedLong", "unsignedInt", "unsignedShort", "unsignedByte",
))
FLOAT_TYPES = frozenset(XSD + t for t in ("decimal", "double", "float"))
BOOLEAN_TYPE = XSD + "boolean"

SHARE_PREFIX = "share://"


def denumerate(values: List[Any]) -> Any:
    if not values:
        return None
    if len(values) == 1:
        return values[0]
    return values


def convert_term(term: Mapping[str, str]) -> Any:
    """
    Convert a SPARQL JSON term to its JSON value.

    Numeric literals become numbers and booleans become bools; dates, times
    and every other term keep their string form.
    """
    value = term.get("value", "")
    datatype = term.get("datatype")
    try:
        if datatype in INTEGER_TYPES:
            return int(value)
        if datatype in FLOAT_TYPES:
            return float(value)
    except ValueError:
        logger.warning("Invalid %s literal %r, indexing it as a string", datatype, value)
        return value
    if datatype == BOOLEAN_TYPE:
        return value.lower() == "true"
    return value


class DocumentBuilder:
    """
    Builds documents for one authorization context.

    Example:
        builder = DocumentBuilder(sparql, context, attachments_path_base="/data")
        document = builder.fetch_document(uri, type_definition.properties)
    """

    def __init__(
        self,
        sparql: SparqlClient,
        context: AuthorizationContext,
        attachments_path_base: str = "/data",
        maximum_file_size: Optional[int] = None,
        extractor: Optional[TextExtractor] = None
    ):
        self.sparql = sparql
        self.context = context
        self.attachments_path_base = Path(attachments_path_base)
        self.maximum_file_size = maximum_file_size
        self.extractor = extractor

    def fetch_document(self, uri: str, properties: Mapping[str, PropertySchema]) -> Dict[str, Any]:
        """
        Build the document for a resource.

        Args:
            uri: URI of the resource
            properties: Property schema of the resource's type

        Returns:
            Document mapping each property name to its denumerated value.
            A "uuid" property is always included.
        """
        if "uuid" not in properties:
            properties = dict(properties)
            properties["uuid"] = SimpleProperty(path=(UUID_PREDICATE,))

        document: Dict[str, Any] = {}
        for key, prop in properties.items():
            terms = self._property_values(uri, prop)
            if isinstance(prop, NestedProperty):
                document[key] = self._nested_documents(terms, prop)
            elif isinstance(prop, AttachmentProperty):
                document[key] = self._attachments(terms)
            else:
                document[key] = denumerate([convert_term(t) for t in terms])
        return document

    def _property_values(self, uri: str, prop: PropertySchema) -> List[Mapping[str, str]]:
        query = (
            f"SELECT DISTINCT ?value WHERE {{\n"
            f"  {escape_uri(uri)} {make_predicate_path(prop.path)} ?value .\n"
            f"}}\n"
            "ORDER BY ?value"
        )
        rows = self.sparql.query(query, self.context)
        return [row["value"] for row in rows if "value" in row]

    def _nested_documents(self, terms: List[Mapping[str, str]], prop: NestedProperty) -> Any:
        documents = []
        for term in terms:
            if term.get("type") != "uri":
                logger.debug("Skipping non-URI value %r of nested property", term.get("value"))
                continue
            documents.append(self.fetch_document(term["value"], prop.properties))
        return denumerate(documents)

    def _attachments(self, terms: List[Mapping[str, str]]) -> Any:
        texts = []
        for term in terms:
            text = self._attachment_text(term.get("value", ""))
            if text is not None:
                texts.append(text)
        return denumerate(texts)

    def _attachment_text(self, file_uri: str) -> Optional[str]:
        if self.extractor is None:
            logger.warning("No text extractor configured, ignoring attachment %s", file_uri)
            return None
        relative = file_uri[len(SHARE_PREFIX):] if file_uri.startswith(SHARE_PREFIX) else file_uri
        path = self.attachments_path_base / relative.lstrip("/")
        try:
            size = path.stat().st_size
            if self.maximum_file_size is not None and size > self.maximum_file_size:
                logger.warning(
                    "Ignoring attachment %s: %d bytes exceeds allowed size of %d bytes",
                    path, size, self.maximum_file_size
                )
                return None
            data = path.read_bytes()
        except OSError as e:
            logger.warning("Error reading attachment %s: %s", path, e)
            return None

        try:
            return self.extractor.extract(path.name, data)
        except ExtractionError as e:
            logger.warning("Failed to extract text from attachment %s: %s", path, e)
            return None
