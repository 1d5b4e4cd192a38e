"""Entity snapshot reader.

Turns the unit-of-work state of a SQLAlchemy ``Session`` into
``PendingMutation`` records. ``read_pending_mutations`` is meant to run inside
``after_flush``, where the session's ``new``/``dirty``/``deleted`` collections
and attribute history still describe the flush that just happened and
generated keys are populated.

Attributes that were expired (``expire_on_commit``) and then overwritten have
no previous value in their history. ``load_committed_values`` runs in
``before_flush``, while the rows are still untouched, and reads those values
straight from the table.
"""

import logging
from typing import Any, Iterator, Mapping

from sqlalchemy import inspect as sa_inspect, select
from sqlalchemy.orm import InstanceState, Session
from sqlalchemy.orm.attributes import History

from audittrail.audit.models import EntityState, PendingMutation
from audittrail.audit.registry import EntityRegistry, entity_registry, join_key_values
from audittrail.config import AuditOptions
from audittrail.database import AuditLog

logger = logging.getLogger(__name__)

SKIPPED_STATES = frozenset({EntityState.UNCHANGED, EntityState.DETACHED})


def lifecycle_state(session: Session, entity: Any) -> EntityState:
    """Report an entity's relationship to the session's pending save."""
    if entity in session.new:
        return EntityState.ADDED
    if entity in session.deleted:
        return EntityState.DELETED
    if entity not in session:
        return EntityState.DETACHED
    if session.is_modified(entity, include_collections=False):
        return EntityState.MODIFIED
    return EntityState.UNCHANGED


def iter_tracked(session: Session) -> Iterator[tuple[Any, EntityState]]:
    """Yield every entity the session tracks, in the session's own order."""
    new = list(session.new)
    deleted = list(session.deleted)
    pending_ids = {id(obj) for obj in new} | {id(obj) for obj in deleted}

    for obj in new:
        yield obj, EntityState.ADDED

    for obj in session.identity_map.values():
        if id(obj) in pending_ids:
            continue
        yield obj, lifecycle_state(session, obj)

    for obj in deleted:
        yield obj, EntityState.DELETED


def _current_value(history: History, fallback: Any) -> Any:
    if history.added:
        return history.added[0]
    if history.unchanged:
        return history.unchanged[0]
    return fallback


def _original_value(history: History, fallback: Any) -> Any:
    if history.deleted:
        return history.deleted[0]
    if history.unchanged:
        return history.unchanged[0]
    if history.added:
        # Changed, but the previous value was never loaded
        return None
    return fallback


def _previous_unknown(history: History) -> bool:
    # Overwritten before the old value was ever loaded
    return bool(history.added) and not history.deleted and not history.unchanged


def _unloaded_names(insp: InstanceState, property_names: tuple[str, ...]) -> list[str]:
    unloaded = insp.unloaded
    return [
        name
        for name in property_names
        if name in unloaded or _previous_unknown(insp.attrs[name].history)
    ]


def _select_committed_row(session: Session, insp: InstanceState, names: list[str]) -> Any:
    mapper = insp.mapper
    entity_type = mapper.class_
    key_criteria = [
        getattr(entity_type, mapper.get_property_by_column(column).key) == value
        for column, value in zip(mapper.primary_key, insp.identity)
    ]
    stmt = select(*[getattr(entity_type, name) for name in names]).where(*key_criteria)
    return session.execute(stmt, execution_options={"autoflush": False}).one_or_none()


def load_committed_values(
    session: Session,
    options: AuditOptions,
    registry: EntityRegistry = entity_registry,
) -> dict[InstanceState, dict[str, Any]]:
    """Read stored values of dirty/deleted entities the session never loaded.

    Must run before the flush writes anything. Returns a map of instance
    state to {property: committed value} for the properties that were
    expired, deferred or overwritten without a loaded previous value.
    """
    committed: dict[InstanceState, dict[str, Any]] = {}
    for entity in list(session.dirty) + list(session.deleted):
        if isinstance(entity, AuditLog) or options.is_excluded_type(type(entity)):
            continue

        insp = sa_inspect(entity)
        if insp.key is None:
            continue

        descriptor = registry.describe(type(entity))
        names = _unloaded_names(insp, descriptor.property_names or ())
        if not names:
            continue

        row = _select_committed_row(session, insp, names)
        if row is None:
            logger.debug(
                "Row vanished before flush; previous values unknown",
                extra={"entity_name": type(entity).__name__},
            )
            continue
        committed[insp] = dict(zip(names, row))
    return committed


def snapshot_entity(
    entity: Any,
    state: EntityState,
    registry: EntityRegistry = entity_registry,
    committed: Mapping[str, Any] | None = None,
) -> PendingMutation:
    """Capture before/after property maps of one mapped entity.

    Reads attribute history and the loaded instance dict only, so no lazy
    loads are emitted. ``committed`` supplies stored values for properties
    that were not loaded (see ``load_committed_values``).
    """
    insp = sa_inspect(entity)
    descriptor = registry.describe(type(entity))
    loaded = insp.dict
    committed = committed or {}

    original: dict[str, Any] = {}
    current: dict[str, Any] = {}
    modified: list[str] = []

    for name in descriptor.property_names or ():
        history = insp.attrs[name].history

        if name in committed:
            before = committed[name]
            after = _current_value(history, before)
            changed = history.has_changes() and after != before
        else:
            fallback = loaded.get(name)
            before = _original_value(history, fallback)
            after = _current_value(history, fallback)
            changed = history.has_changes()

        current[name] = after
        if state != EntityState.ADDED:
            original[name] = before
        if changed:
            modified.append(name)

    if descriptor.key_extractor is not None:
        entity_id = descriptor.entity_id(entity)
    else:
        key_source = original if state == EntityState.DELETED else current
        entity_id = join_key_values([key_source.get(k) for k in descriptor.key_names])

    return PendingMutation(
        entity=entity,
        entity_type=type(entity),
        state=state,
        entity_id=entity_id,
        original_values=original,
        current_values=current,
        modified_properties=tuple(modified),
    )


def read_pending_mutations(
    session: Session,
    options: AuditOptions,
    registry: EntityRegistry = entity_registry,
    committed: Mapping[InstanceState, Mapping[str, Any]] | None = None,
) -> list[PendingMutation]:
    """Collect one PendingMutation per entity touched by the current flush.

    Skips unchanged and detached entities, audit rows themselves (the audit
    table may share the session with business data) and excluded types.
    A modified entity whose only "changes" turn out to equal the stored
    values is skipped as well.
    """
    committed = committed or {}
    mutations = []
    for entity, state in iter_tracked(session):
        if state in SKIPPED_STATES:
            continue
        if isinstance(entity, AuditLog):
            continue
        if options.is_excluded_type(type(entity)):
            logger.debug(f"Skipping excluded entity type {type(entity).__name__}")
            continue

        mutation = snapshot_entity(entity, state, registry, committed.get(sa_inspect(entity)))
        if state == EntityState.MODIFIED and not mutation.modified_properties:
            continue
        mutations.append(mutation)
    return mutations
