"""
TripleSearch Delta Handler
==========================

Turns triplestore deltas into pending changes on the update handler.

Deltas use the v0.0.1 format, a list of change sets:

    [{"inserts": [{"subject": {"type": "uri", "value": "..."},
                   "predicate": {"type": "uri", "value": "..."},
                   "object": {"type": "literal", "value": "...", "datatype": "..."}}],
      "deletes": [...]}]

An rdf:type triple affects its subject directly; deleting it deletes the
document. Any other triple is matched against the configured property paths
and the root subjects it affects are looked up in the triplestore along the
path. Composite types and the sub-properties of nested objects are not
tracked.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .config import RDF_TYPE, SearchConfiguration
from .sparql import SparqlClient, binding_value, escape_literal, escape_uri, make_predicate_path


logger = logging.getLogger(__name__)

INSERT = "insert"
DELETE = "delete"


@dataclass(frozen=True)
class DeltaTriple:
    operation: str
    subject: str
    predicate: str
    object: str
    object_is_uri: bool
    datatype: Optional[str] = None
    language: Optional[str] = None

    @classmethod
    def from_json(cls, operation: str, triple: Dict[str, Any]) -> "DeltaTriple":
        obj = triple["object"]
        return cls(
            operation=operation,
            subject=triple["subject"]["value"],
            predicate=triple["predicate"]["value"],
            object=obj["value"],
            object_is_uri=obj.get("type") == "uri",
            datatype=obj.get("datatype"),
            language=obj.get("xml:lang") or obj.get("lang")
        )

    @property
    def object_term(self) -> str:
        if self.object_is_uri:
            return escape_uri(self.object)
        return escape_literal(self.object, self.datatype, self.language)


@dataclass(frozen=True)
class PropertyPath:
    """A configured property path of a search type."""

    type_name: str
    rdf_type: str
    path: Tuple[str, ...]


class DeltaHandler:
    """
    Routes deltas to the update handler.

    Example:
        handler = DeltaHandler(configuration, sparql, update_handler)
        handler.route(json.loads(request_body))
    """

    def __init__(self, configuration: SearchConfiguration, sparql: SparqlClient, update_handler):
        self.configuration = configuration
        self.sparql = sparql
        self.update_handler = update_handler
        self.type_by_rdf_class = self._map_rdf_classes(configuration)
        self.type_by_predicate = self._map_predicates(configuration)

    @staticmethod
    def _map_rdf_classes(configuration: SearchConfiguration) -> Dict[str, List[str]]:
        type_map: Dict[str, List[str]] = defaultdict(list)
        for type_def in configuration.type_definitions.values():
            # composite types only combine other types
            if not type_def.is_composite:
                type_map[type_def.rdf_type].append(type_def.name)
        return dict(type_map)

    @staticmethod
    def _map_predicates(configuration: SearchConfiguration) -> Dict[str, List[PropertyPath]]:
        property_map: Dict[str, List[PropertyPath]] = defaultdict(list)
        for type_def in configuration.type_definitions.values():
            if type_def.is_composite:
                continue
            for prop in type_def.properties.values():
                entry = PropertyPath(type_def.name, type_def.rdf_type, prop.path)
                for predicate in prop.path:
                    if entry not in property_map[predicate]:
                        property_map[predicate].append(entry)
        return dict(property_map)

    def applicable_paths(self, triple: DeltaTriple) -> List[PropertyPath]:
        """Property paths of the search types a triple may affect."""
        if triple.predicate == RDF_TYPE:
            return [
                PropertyPath(type_name, triple.object, (RDF_TYPE,))
                for type_name in self.type_by_rdf_class.get(triple.object, [])
            ]
        paths = list(self.type_by_predicate.get(triple.predicate, []))
        for entry in self.type_by_predicate.get("^" + triple.predicate, []):
            if entry not in paths:
                paths.append(entry)
        return paths

    def find_subjects_for_delta(self, triple: DeltaTriple, path: PropertyPath, addition: bool = True) -> List[str]:
        """Root subjects of the search type affected by the triple."""
        if triple.predicate == RDF_TYPE:
            return [triple.subject]

        subjects: List[str] = []
        last = len(path.path) - 1
        for position, predicate in enumerate(path.path):
            if predicate not in (triple.predicate, "^" + triple.predicate):
                continue
            if position != last and not triple.object_is_uri:
                logger.debug("Discarding path %s because object %r is not a URI", path.path, triple.object)
                return []
            inverse = predicate != triple.predicate
            query = self.query_for_path(position, triple, path, inverse, addition)
            for row in self.sparql.sudo_query(query):
                subject = binding_value(row, "s")
                if subject and subject not in subjects:
                    subjects.append(subject)
        return subjects

    @staticmethod
    def query_for_path(position: int, triple: DeltaTriple, path: PropertyPath, inverse: bool, addition: bool) -> str:
        """
        Query selecting the roots that reach the triple at the given path position.

        For an insertion the triple itself and the remainder of the path
        beyond it must still resolve; for a deletion neither can be checked.
        """
        subject = escape_uri(triple.subject)
        obj = triple.object_term
        near, far = (obj, subject) if inverse else (subject, obj)

        lines = ["SELECT DISTINCT ?s WHERE {"]
        if addition:
            lines.append(f"  {subject} {escape_uri(triple.predicate)} {obj} .")
        if position == 0:
            lines.append(f"  BIND({near} AS ?s)")
        else:
            lines.append(f"  ?s {make_predicate_path(path.path[:position])} {near} .")
        lines.append(f"  ?s a {escape_uri(path.rdf_type)} .")
        rest = path.path[position + 1:]
        if rest and addition:
            lines.append(f"  {far} {make_predicate_path(rest)} ?rest .")
        lines.append("}")
        return "\n".join(lines)

    def parse_deltas(self, deltas: Iterable[Any]) -> Tuple[Dict[str, Set[str]], Dict[str, Set[str]]]:
        """
        Determine the documents affected by a batch of deltas.

        Returns:
            Tuple of (docs_to_update, docs_to_delete), each mapping a subject
            to the names of the search types it has to be processed for
        """
        docs_to_update: Dict[str, Set[str]] = defaultdict(set)
        docs_to_delete: Dict[str, Set[str]] = defaultdict(set)

        for delta in deltas:
            if not isinstance(delta, dict):
                logger.error("Received delta is not in v0.0.1 format, ignoring %r", delta)
                continue
            for triple in self._triples(INSERT, delta.get("inserts") or []):
                for path in self.applicable_paths(triple):
                    for subject in self.find_subjects_for_delta(triple, path):
                        logger.debug("Found subject %s of type '%s' for %s", subject, path.type_name, triple)
                        docs_to_update[subject].add(path.type_name)

            for triple in self._triples(DELETE, delta.get("deletes") or []):
                for path in self.applicable_paths(triple):
                    if triple.predicate == RDF_TYPE:
                        docs_to_delete[triple.subject].add(path.type_name)
                        continue
                    for subject in self.find_subjects_for_delta(triple, path, addition=False):
                        logger.debug("Found subject %s of type '%s' for %s", subject, path.type_name, triple)
                        docs_to_update[subject].add(path.type_name)

        return dict(docs_to_update), dict(docs_to_delete)

    @staticmethod
    def _triples(operation: str, raw_triples: Iterable[Any]) -> List[DeltaTriple]:
        triples: List[DeltaTriple] = []
        for raw in raw_triples:
            try:
                triple = DeltaTriple.from_json(operation, raw)
            except (KeyError, TypeError) as e:
                logger.error("Ignoring malformed %s triple %r: %s", operation, raw, e)
                continue
            if triple not in triples:
                triples.append(triple)
        return triples

    def route(self, deltas: Iterable[Any]) -> Tuple[int, int]:
        """
        Enqueue the changes caused by a batch of deltas.

        Returns:
            Number of (subject, type) updates and deletes enqueued
        """
        docs_to_update, docs_to_delete = self.parse_deltas(deltas)
        updates = deletes = 0
        for subject, type_names in docs_to_update.items():
            for type_name in sorted(type_names):
                self.update_handler.add_update(subject, type_name)
                updates += 1
        for subject, type_names in docs_to_delete.items():
            for type_name in sorted(type_names):
                self.update_handler.add_delete(subject, type_name)
                deletes += 1
        logger.info("Routed deltas: %d updates and %d deletes enqueued", updates, deletes)
        return updates, deletes
