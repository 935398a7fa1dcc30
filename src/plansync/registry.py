"""
This module declares every entity collection the engine knows about.

All families behave identically; they differ only in their names, their query-cache
keys and, for the hierarchical families (canvas, GRP, product journeys), in the
field that links a child record to its parent. The tree of collections is described
once here and walked generically by `locate_parent`, `ancestors` and the ordering
of bulk promotions.
"""
from typing import Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from .errors import UnknownCollectionError


class CollectionSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    family: str
    query_key: str  # Segment used in the bulk-fetch cache key
    parent: Optional[str] = None  # Name of the parent collection, if nested
    parent_field: Optional[str] = None  # Field on this record referencing the parent id
    child_fields: Tuple[str, ...] = ()  # Nested child lists, ignored when diffing


def _flat(family: str, *pairs: Tuple[str, str]) -> List[CollectionSpec]:
    return [CollectionSpec(name=name, family=family, query_key=key) for name, key in pairs]


# Declaration order is parent-before-child; promotions rely on it.
COLLECTIONS: List[CollectionSpec] = [
    CollectionSpec(name="canvas_sections", family="business_model", query_key="sections",
                   child_fields=("items",)),
    CollectionSpec(name="canvas_items", family="business_model", query_key="items",
                   parent="canvas_sections", parent_field="section_id"),
    CollectionSpec(name="grp_categories", family="grp", query_key="categories",
                   child_fields=("sections",)),
    CollectionSpec(name="grp_sections", family="grp", query_key="sections",
                   parent="grp_categories", parent_field="category_id", child_fields=("items",)),
    CollectionSpec(name="grp_items", family="grp", query_key="items",
                   parent="grp_sections", parent_field="section_id"),
    *_flat(
        "market_analysis",
        ("market_personas", "personas"),
        ("market_interviews", "interviews"),
        ("market_competitors", "competitors"),
        ("market_trends", "trends"),
    ),
    *_flat(
        "financials",
        ("financial_revenue_streams", "revenueStreams"),
        ("financial_cost_structure", "costStructure"),
        ("financial_pricing_strategies", "pricingStrategies"),
        ("financial_projections", "projections"),
    ),
    *_flat(
        "product_design",
        ("product_wireframes", "wireframes"),
        ("product_features", "features"),
    ),
    CollectionSpec(name="product_journey_stages", family="product_design", query_key="journeyStages",
                   child_fields=("actions", "pain_points")),
    CollectionSpec(name="product_journey_actions", family="product_design", query_key="journeyActions",
                   parent="product_journey_stages", parent_field="stage_id"),
    CollectionSpec(name="product_journey_pain_points", family="product_design",
                   query_key="journeyPainPoints",
                   parent="product_journey_stages", parent_field="stage_id"),
    *_flat(
        "team",
        ("team_members", "members"),
        ("team_tasks", "tasks"),
        ("team_responsibility_matrix", "responsibilityMatrix"),
    ),
    *_flat(
        "validation",
        ("validation_experiments", "experiments"),
        ("validation_ab_tests", "abTests"),
        ("validation_user_feedback", "userFeedback"),
        ("validation_hypotheses", "hypotheses"),
    ),
    *_flat(
        "documents",
        ("documents", "documents"),
        ("document_collaborators", "collaborators"),
    ),
    *_flat(
        "cross_feature",
        ("notifications", "notifications"),
        ("related_items", "relatedItems"),
        ("project_tags", "tags"),
        ("feature_item_tags", "itemTags"),
    ),
]

_BY_NAME: Dict[str, CollectionSpec] = {spec.name: spec for spec in COLLECTIONS}
COLLECTION_NAMES: Tuple[str, ...] = tuple(_BY_NAME)
FAMILIES: Tuple[str, ...] = tuple(dict.fromkeys(spec.family for spec in COLLECTIONS))


def get_spec(name: str) -> CollectionSpec:
    try:
        return _BY_NAME[name]
    except KeyError:
        raise UnknownCollectionError(name) from None


def family_collections(family: str) -> List[CollectionSpec]:
    return [spec for spec in COLLECTIONS if spec.family == family]


def find_by_query_key(family: str, query_key: str) -> Optional[CollectionSpec]:
    for spec in COLLECTIONS:
        if spec.family == family and spec.query_key == query_key:
            return spec
    return None


def locate_parent(snapshot, collection: str, entity_id: str):
    """
    Returns `(parent_collection, parent_entity)` for an entity of a nested collection.

    `(None, None)` means the collection is flat or the entity is missing; a missing
    parent record yields `(parent_collection, None)`.
    """
    spec = get_spec(collection)
    entity = snapshot[collection].get(entity_id)
    if spec.parent is None or entity is None:
        return None, None
    parent_id = getattr(entity, spec.parent_field, None)
    if parent_id is None:
        return spec.parent, None
    return spec.parent, snapshot[spec.parent].get(parent_id)


def ancestors(snapshot, collection: str, entity_id: str) -> Iterator[Tuple[str, object]]:
    """Walks from an entity up to the root of its family (item -> section -> category)."""
    current_collection, current_id = collection, entity_id
    while True:
        parent_collection, parent = locate_parent(snapshot, current_collection, current_id)
        if parent is None:
            return
        yield parent_collection, parent
        current_collection, current_id = parent_collection, parent.id
