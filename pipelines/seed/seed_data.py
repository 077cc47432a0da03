"""
Demo data generator -- fills the record store with a small catalogue.

Generates:
  - entities   (books and movies, a few of them child editions)
  - lists      (wishlists and favourites owned by a handful of users)
  - relations  (list membership, capped per list)
  - reactions  (likes / comments on entities and lists)

Everything goes through ``RecordService`` so managed fields, limits and
uniqueness rules apply exactly as they do for API writes.
Run:  python -m pipelines.seed.seed_data
"""
from __future__ import annotations

import random
from pathlib import Path

from dotenv import load_dotenv
from faker import Faker

from recordhub.core.errors import RecordHubError
from recordhub.db.connection import get_engine
from recordhub.db.store import RecordStore
from recordhub.governance.policy import build_config
from recordhub.query.access import Requester
from recordhub.records.service import RecordService

# ── Load .env from project root ─────────────────────────
_PROJECT_ROOT = Path(__file__).resolve().parents[2]
load_dotenv(_PROJECT_ROOT / ".env")

# ── Tunables ─────────────────────────────────────────────
NUM_USERS = 8
NUM_ENTITIES = 60
NUM_LISTS = 12
MAX_ENTITIES_PER_LIST = 10
NUM_REACTIONS = 80

KINDS = ["book", "movie"]
LIST_KINDS = ["wishlist", "favorites"]
VISIBILITIES = ["public", "protected", "private"]
VISIBILITY_WEIGHTS = [0.5, 0.35, 0.15]
REACTION_KINDS = ["like", "comment"]
GROUPS = ["readers", "critics", "staff"]


def _users(fake: Faker) -> list[Requester]:
    return [
        Requester(user_id=fake.user_name(), group_ids=(random.choice(GROUPS),))
        for _ in range(NUM_USERS)
    ]


# ── Generators ───────────────────────────────────────────

def gen_entities(service: RecordService, fake: Faker, users: list[Requester]) -> list[dict]:
    created: list[dict] = []
    for _ in range(NUM_ENTITIES):
        owner = random.choice(users)
        payload = {
            "_name": fake.catch_phrase(),
            "_kind": random.choice(KINDS),
            "_visibility": random.choices(VISIBILITIES, weights=VISIBILITY_WEIGHTS, k=1)[0],
            "_ownerGroups": list(owner.group_ids),
            "_validFromDateTime": fake.date_time_this_decade(tzinfo=None).isoformat() + "Z",
            "author": fake.name(),
            "year": int(fake.year()),
            "rating": round(random.uniform(1, 5), 1),
        }
        if created and random.random() < 0.1:
            # editions belong to the parent's owner, who can always read the parent
            parent = random.choice(created)
            parent_owner = Requester(user_id=parent["_ownerUsers"][0])
            record = service.create_child("entities", parent["_id"], payload, parent_owner)
        else:
            record = service.create("entities", payload, owner)
        created.append(record)
    return created


def gen_lists(service: RecordService, fake: Faker, users: list[Requester]) -> list[dict]:
    created = []
    for _ in range(NUM_LISTS):
        owner = random.choice(users)
        created.append(service.create("lists", {
            "_name": f"{fake.word().title()} {fake.word()}",
            "_kind": random.choice(LIST_KINDS),
            "_visibility": random.choice(VISIBILITIES),
            "_viewerUsers": [u.user_id for u in random.sample(users, 2)],
        }, owner))
    return created


def gen_relations(service: RecordService, lists: list[dict], entities: list[dict]) -> int:
    """Link entities into lists; rejected links (limits) are skipped."""
    count = 0
    for lst in lists:
        owner = Requester(user_id=lst["_ownerUsers"][0] if lst["_ownerUsers"] else None)
        members = random.sample(entities, random.randint(1, MAX_ENTITIES_PER_LIST))
        for entity in members:
            try:
                service.create("list-entity-relations", {
                    "_listId": lst["_id"], "_entityId": entity["_id"],
                }, owner)
            except RecordHubError as exc:
                print(f"  - skipped relation: {exc.code}")
                continue
            count += 1
    return count


def gen_reactions(
    service: RecordService,
    fake: Faker,
    users: list[Requester],
    lists: list[dict],
    entities: list[dict],
) -> int:
    for _ in range(NUM_REACTIONS):
        user = random.choice(users)
        kind = random.choice(REACTION_KINDS)
        payload = {"_kind": kind, "_visibility": "public"}
        if kind == "comment":
            payload["text"] = fake.sentence()
        if random.random() < 0.75:
            service.create("entity-reactions", {**payload, "_entityId": random.choice(entities)["_id"]}, user)
        else:
            service.create("list-reactions", {**payload, "_listId": random.choice(lists)["_id"]}, user)
    return NUM_REACTIONS


def seed(service: RecordService, seed_value: int = 42) -> dict[str, int]:
    """Populate *service* with demo records; returns counts per family."""
    fake = Faker()
    Faker.seed(seed_value)
    random.seed(seed_value)

    users = _users(fake)
    entities = gen_entities(service, fake, users)
    lists = gen_lists(service, fake, users)
    return {
        "entities": len(entities),
        "lists": len(lists),
        "list-entity-relations": gen_relations(service, lists, entities),
        "reactions": gen_reactions(service, fake, users, lists, entities),
    }


# ── Main ─────────────────────────────────────────────────

def main():
    print("═══ Demo Data Generator ═══")
    service = RecordService(RecordStore(get_engine()), build_config())
    counts = seed(service)
    print("Done. seeded " + ", ".join(f"{n:,} {family}" for family, n in counts.items()))


if __name__ == "__main__":
    main()
