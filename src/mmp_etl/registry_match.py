"""mmp_etl.registry_match

Reconciles parsed site entries against the canonical site registry.

Matching tiers (first satisfied tier wins, later tiers are not evaluated):
  1. exact_code     normalized site code                      confidence 1.00
  2. name_location  normalized (site name, state, locality)   confidence 0.85
  3. name_state     normalized (site name, state)             confidence 0.70
Ties inside a tier go to the oldest registry row (fetch order is
created_at, id and the index keeps the first row it sees).

Entries are grouped by identity key (code|name|state|locality).  Each key is
matched once and carries the number of batch rows that share it.  Keys with
no match are queued for creation; queued sites are added to the same index,
so later keys that would resolve to the same new site share it instead of
creating a second row.

Counting formula, applied with one atomic increment per touched row:
  final_count = prior_count + occurrences
New rows are inserted with mmp_count = 0, so their final count is simply the
number of batch occurrences that reference them.

Usage:
    registry = fetch_registry(conn)
    plan = plan_reconciliation(entries, registry, schema)
    matches = apply_reconciliation(conn, plan, created_by=uploader.id)
    matches[entry.identity_key()].registry_site_id
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Union

import psycopg

from mmp_etl.normalize import code_prefix, normalize_code, normalize_name, normalize_space
from mmp_etl.plan_schema import PlanSchema
from mmp_etl.shared import (
    Issue,
    MatchResult,
    PersistenceError,
    RegistrySite,
    SiteEntry,
    warning,
)

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

TIER_EXACT_CODE = "exact_code"
TIER_NAME_LOCATION = "name_location"
TIER_NAME_STATE = "name_state"
TIER_CREATED = "created"

TIER_CONFIDENCE = {
    TIER_EXACT_CODE: 1.0,
    TIER_NAME_LOCATION: 0.85,
    TIER_NAME_STATE: 0.70,
    TIER_CREATED: 0.0,
}

DEFAULT_INSERT_BATCH_SIZE = 50
MAX_CODE_SUFFIX = 9999
MAX_INSERT_ATTEMPTS = 5

_REGISTRY_COLS = (
    "id, site_code, site_name, state_name, locality_name, hub_name, "
    "activity_type, status, mmp_count, gps_latitude, gps_longitude"
)


# ---------------------------------------------------------------------------
# Queued new sites
# ---------------------------------------------------------------------------

@dataclass
class NewSite:
    """A registry row to be created by apply_reconciliation."""

    site_code: str
    site_name: str
    state_name: str | None
    locality_name: str | None
    hub_name: str | None
    activity_type: str
    code_generated: bool = False
    # "WD-KUL-ADAR" for generated codes; used to pick a new suffix on collision
    code_stem: str | None = None
    registry_site_id: str | None = None
    inserted: bool = False

    @property
    def normalized_code(self) -> str:
        return normalize_code(self.site_code) or ""


Site = Union[RegistrySite, NewSite]


# ---------------------------------------------------------------------------
# Index
# ---------------------------------------------------------------------------

def _name_location_key(name: str | None, state: str | None, locality: str | None) -> tuple[str, str, str] | None:
    n = normalize_name(name)
    if not n:
        return None
    return (n, normalize_name(state) or "", normalize_name(locality) or "")


def _name_state_key(name: str | None, state: str | None) -> tuple[str, str] | None:
    n, s = normalize_name(name), normalize_name(state)
    if not n or not s:
        return None
    return (n, s)


@dataclass
class RegistryIndex:
    by_code: dict[str, Site] = field(default_factory=dict)
    by_name_location: dict[tuple[str, str, str], Site] = field(default_factory=dict)
    by_name_state: dict[tuple[str, str], Site] = field(default_factory=dict)

    @classmethod
    def build(cls, sites: list[RegistrySite]) -> "RegistryIndex":
        index = cls()
        for site in sites:
            index.add(site)
        return index

    def add(self, site: Site) -> None:
        """Index *site*; an already-indexed (older) site keeps every key it holds."""
        code = normalize_code(site.site_code)
        if code:
            self.by_code.setdefault(code, site)
        nl = _name_location_key(site.site_name, site.state_name, site.locality_name)
        if nl:
            self.by_name_location.setdefault(nl, site)
        ns = _name_state_key(site.site_name, site.state_name)
        if ns:
            self.by_name_state.setdefault(ns, site)

    def codes(self) -> set[str]:
        return set(self.by_code)


def match_entry(entry: SiteEntry, index: RegistryIndex) -> tuple[Site | None, str | None, float]:
    """Return (site, tier, confidence) for the first tier that matches, else (None, None, 0.0)."""
    code = normalize_code(entry.site_code)
    if code and code in index.by_code:
        return index.by_code[code], TIER_EXACT_CODE, TIER_CONFIDENCE[TIER_EXACT_CODE]

    nl = _name_location_key(entry.site_name, entry.state, entry.locality)
    if nl and nl in index.by_name_location:
        return index.by_name_location[nl], TIER_NAME_LOCATION, TIER_CONFIDENCE[TIER_NAME_LOCATION]

    ns = _name_state_key(entry.site_name, entry.state)
    if ns and ns in index.by_name_state:
        return index.by_name_state[ns], TIER_NAME_STATE, TIER_CONFIDENCE[TIER_NAME_STATE]

    return None, None, 0.0


# ---------------------------------------------------------------------------
# Site code generation
# ---------------------------------------------------------------------------

def site_code_stem(
    schema: PlanSchema,
    state: str | None,
    locality: str | None,
    name: str | None,
) -> str:
    """STATE-LOC-NAME prefix; the state part is the known state code when there is one."""
    state_part = schema.state_code(state) or code_prefix(state, 2)
    return f"{state_part}-{code_prefix(locality, 3)}-{code_prefix(name, 4)}"


def next_site_code(stem: str, taken: set[str]) -> str:
    """First `{stem}-NNNN` whose normalized form is not in *taken*."""
    for seq in range(1, MAX_CODE_SUFFIX + 1):
        candidate = f"{stem}-{seq:04d}"
        if normalize_code(candidate) not in taken:
            return candidate
    raise PersistenceError("reconcile", f"no free site code suffix left for {stem}")


def generate_site_code(
    schema: PlanSchema,
    state: str | None,
    locality: str | None,
    name: str | None,
    taken: set[str],
) -> str:
    return next_site_code(site_code_stem(schema, state, locality, name), taken)


# ---------------------------------------------------------------------------
# Planning (pure)
# ---------------------------------------------------------------------------

@dataclass
class KeyResolution:
    identity_key: str
    occurrences: int
    first_row: int
    tier: str
    confidence: float
    existing: RegistrySite | None = None
    new_site: NewSite | None = None

    @property
    def registry_site_id(self) -> str | None:
        if self.existing is not None:
            return self.existing.id
        return self.new_site.registry_site_id if self.new_site else None


@dataclass
class ReconciliationPlan:
    resolutions: dict[str, KeyResolution] = field(default_factory=dict)
    new_sites: list[NewSite] = field(default_factory=list)
    taken_codes: set[str] = field(default_factory=set)

    @property
    def created_count(self) -> int:
        """Queued sites, less any that apply_reconciliation linked to a concurrent row."""
        return sum(1 for s in self.new_sites if s.inserted or s.registry_site_id is None)

    @property
    def linked_count(self) -> int:
        linked = {r.existing.id for r in self.resolutions.values() if r.existing is not None}
        linked.update(
            s.registry_site_id for s in self.new_sites
            if s.registry_site_id is not None and not s.inserted
        )
        return len(linked)

    def summary_message(self) -> str:
        return (
            f"{self.created_count} new sites registered, "
            f"{self.linked_count} existing sites linked"
        )

    def issues(self) -> list[Issue]:
        """One advisory issue per site that had to be registered."""
        out: list[Issue] = []
        seen: set[int] = set()
        for res in self.resolutions.values():
            site = res.new_site
            if site is None or id(site) in seen:
                continue
            if site.registry_site_id is not None and not site.inserted:
                continue
            seen.add(id(site))
            out.append(warning(
                "unmatched_sites",
                f"Site '{site.site_name}' was not found in the registry; "
                f"registered as {site.site_code}",
                res.first_row,
            ))
        return out


def _new_site_for(entry: SiteEntry, schema: PlanSchema, taken: set[str]) -> NewSite:
    # a code with nothing left after normalizing ("-", "/") counts as absent
    supplied = normalize_space(entry.site_code) if normalize_code(entry.site_code) else None
    stem = None
    if supplied:
        code = supplied
    else:
        stem = site_code_stem(schema, entry.state, entry.locality, entry.site_name)
        code = next_site_code(stem, taken)
    return NewSite(
        site_code=code,
        site_name=entry.site_name or code,
        state_name=entry.state,
        locality_name=entry.locality,
        hub_name=entry.hub_office or schema.hub_for_state(entry.state),
        activity_type=schema.default_activity_type,
        code_generated=stem is not None,
        code_stem=stem,
    )


def plan_reconciliation(
    entries: list[SiteEntry],
    registry: list[RegistrySite],
    schema: PlanSchema,
) -> ReconciliationPlan:
    """Group entries by identity key, match each key, and queue missing sites.

    No I/O; the result is applied with apply_reconciliation.
    """
    groups: dict[str, list[SiteEntry]] = {}
    for entry in entries:
        groups.setdefault(entry.identity_key(), []).append(entry)

    index = RegistryIndex.build(registry)
    plan = ReconciliationPlan(taken_codes=index.codes())

    for key, group in groups.items():
        first = group[0]
        site, tier, confidence = match_entry(first, index)
        res = KeyResolution(
            identity_key=key,
            occurrences=len(group),
            first_row=first.row_number,
            tier=TIER_CREATED,
            confidence=TIER_CONFIDENCE[TIER_CREATED],
        )
        if isinstance(site, RegistrySite):
            res.existing, res.tier, res.confidence = site, tier, confidence
        elif isinstance(site, NewSite):
            res.new_site = site
        else:
            new_site = _new_site_for(first, schema, plan.taken_codes)
            plan.taken_codes.add(new_site.normalized_code)
            plan.new_sites.append(new_site)
            index.add(new_site)
            res.new_site = new_site
        plan.resolutions[key] = res

    log.debug(
        "reconciliation plan: %d keys, %d new sites, %d existing sites",
        len(plan.resolutions), plan.created_count, plan.linked_count,
    )
    return plan


# ---------------------------------------------------------------------------
# Registry I/O
# ---------------------------------------------------------------------------

def fetch_registry(conn: psycopg.Connection) -> list[RegistrySite]:
    """Load the full registry, oldest rows first."""
    rows = conn.execute(
        f"SELECT {_REGISTRY_COLS} FROM sites_registry ORDER BY created_at, id"
    ).fetchall()
    col_names = [c.strip() for c in _REGISTRY_COLS.split(",")]
    return [RegistrySite.from_row(dict(zip(col_names, row))) for row in rows]


def _insert_site_batch(
    conn: psycopg.Connection,
    sites: list[NewSite],
    created_by: str | None,
) -> dict[str, str]:
    """Insert *sites*; return normalized_code -> id for the rows actually inserted."""
    placeholders = ", ".join(["(%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)"] * len(sites))
    params: list[object] = []
    for s in sites:
        params.extend([
            s.site_code, s.normalized_code,
            s.site_name, normalize_name(s.site_name),
            s.state_name, normalize_name(s.state_name),
            s.locality_name, normalize_name(s.locality_name),
            s.hub_name, s.activity_type, created_by,
        ])
    rows = conn.execute(
        f"""
        INSERT INTO sites_registry
          (site_code, normalized_code, site_name, normalized_name,
           state_name, normalized_state, locality_name, normalized_locality,
           hub_name, activity_type, created_by)
        VALUES {placeholders}
        ON CONFLICT (normalized_code) DO NOTHING
        RETURNING normalized_code, id
        """,
        params,
    ).fetchall()
    return {code: str(site_id) for code, site_id in rows}


def _select_by_codes(conn: psycopg.Connection, codes: list[str]) -> dict[str, tuple]:
    rows = conn.execute(
        """
        SELECT normalized_code, id, normalized_name, normalized_state, normalized_locality
        FROM sites_registry
        WHERE normalized_code = ANY(%s)
        """,
        (codes,),
    ).fetchall()
    return {row[0]: (str(row[1]), row[2], row[3], row[4]) for row in rows}


def _same_place(site: NewSite, name: str | None, state: str | None, locality: str | None) -> bool:
    return (
        normalize_name(site.site_name) == name
        and normalize_name(site.state_name) == state
        and normalize_name(site.locality_name) == locality
    )


def create_registry_sites(
    conn: psycopg.Connection,
    sites: list[NewSite],
    taken_codes: set[str],
    created_by: str | None = None,
    batch_size: int = DEFAULT_INSERT_BATCH_SIZE,
) -> None:
    """Insert queued sites in bounded batches and set their registry_site_id.

    A conflicting normalized code means a concurrent upload registered the
    code first.  A supplied code (or a generated one for the same place)
    links to that row; any other generated code takes the next free suffix
    and is retried.
    """
    pending = list(sites)
    for _attempt in range(MAX_INSERT_ATTEMPTS):
        if not pending:
            return
        conflicted: list[NewSite] = []
        for start in range(0, len(pending), batch_size):
            chunk = pending[start:start + batch_size]
            inserted = _insert_site_batch(conn, chunk, created_by)
            for site in chunk:
                if site.normalized_code in inserted:
                    site.registry_site_id = inserted[site.normalized_code]
                    site.inserted = True
                else:
                    conflicted.append(site)

        if not conflicted:
            return
        existing = _select_by_codes(conn, [s.normalized_code for s in conflicted])
        pending = []
        for site in conflicted:
            taken_codes.add(site.normalized_code)
            found = existing.get(site.normalized_code)
            if found is None:
                # the conflicting row vanished between insert and select
                pending.append(site)
                continue
            site_id, name, state, locality = found
            if not site.code_generated or _same_place(site, name, state, locality):
                log.info("site code %s registered concurrently; linking", site.site_code)
                site.registry_site_id = site_id
                continue
            site.site_code = next_site_code(site.code_stem or site.site_code, taken_codes)
            taken_codes.add(site.normalized_code)
            pending.append(site)

    if pending:
        raise PersistenceError(
            "reconcile",
            f"could not register {len(pending)} site(s) after {MAX_INSERT_ATTEMPTS} attempts",
        )


def increment_registry_counts(
    conn: psycopg.Connection,
    occurrences_by_site: dict[str, int],
) -> dict[str, int]:
    """Atomically add occurrences to mmp_count; return site id -> new count."""
    if not occurrences_by_site:
        return {}
    ids = list(occurrences_by_site)
    rows = conn.execute(
        """
        UPDATE sites_registry AS s
        SET mmp_count  = s.mmp_count + v.occurrences,
            updated_at = now()
        FROM unnest(%s::uuid[], %s::int[]) AS v(id, occurrences)
        WHERE s.id = v.id
        RETURNING s.id, s.mmp_count
        """,
        (ids, [occurrences_by_site[i] for i in ids]),
    ).fetchall()
    counts = {str(site_id): count for site_id, count in rows}
    missing = set(ids) - set(counts)
    if missing:
        raise PersistenceError("reconcile", f"registry sites not found: {sorted(missing)}")
    return counts


def apply_reconciliation(
    conn: psycopg.Connection,
    plan: ReconciliationPlan,
    created_by: str | None = None,
    batch_size: int = DEFAULT_INSERT_BATCH_SIZE,
) -> dict[str, MatchResult]:
    """Create queued sites, bump occurrence counts, and return identity_key -> MatchResult.

    Runs inside the caller's transaction; nothing is committed here.
    """
    create_registry_sites(conn, plan.new_sites, plan.taken_codes, created_by, batch_size)

    occurrences_by_site: dict[str, int] = {}
    for res in plan.resolutions.values():
        site_id = res.registry_site_id
        if site_id is None:
            raise PersistenceError("reconcile", f"no registry site resolved for key {res.identity_key!r}")
        occurrences_by_site[site_id] = occurrences_by_site.get(site_id, 0) + res.occurrences

    final_counts = increment_registry_counts(conn, occurrences_by_site)

    matches: dict[str, MatchResult] = {}
    for key, res in plan.resolutions.items():
        site_id = res.registry_site_id
        tier, confidence = res.tier, res.confidence
        is_new = res.new_site is not None and res.new_site.inserted
        if res.new_site is not None and not res.new_site.inserted:
            # linked to a row another upload registered first
            tier, confidence = TIER_EXACT_CODE, TIER_CONFIDENCE[TIER_EXACT_CODE]
        matches[key] = MatchResult(
            registry_site_id=site_id,
            is_new=is_new,
            tier=tier,
            confidence=confidence,
            occurrences=res.occurrences,
            final_count=final_counts[site_id],
        )
    return matches
