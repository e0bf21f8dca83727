"""Which catalog products a user may rank.

Resolved once per request into one of three variants:

- ``AllCatalog``: employees rank anything.
- ``Purchased``: products from the user's non-cancelled orders.
- ``PurchasedOrFlagged``: purchases plus products flagged ``force_rankable``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union

from coinbook.auth.service import is_employee_admin
from coinbook.db.models import User
from coinbook.repositories.unit_of_work import Repositories


@dataclass(frozen=True)
class AllCatalog:
    kind: str = field(default="all_catalog", init=False)

    def allows(self, product_id: str) -> bool:
        return True


@dataclass(frozen=True)
class Purchased:
    purchased: frozenset[str]
    kind: str = field(default="purchased", init=False)

    def allows(self, product_id: str) -> bool:
        return product_id in self.purchased


@dataclass(frozen=True)
class PurchasedOrFlagged:
    purchased: frozenset[str]
    flagged: frozenset[str]
    kind: str = field(default="purchased_or_flagged", init=False)

    def allows(self, product_id: str) -> bool:
        return product_id in self.purchased or product_id in self.flagged


RankEligibility = Union[AllCatalog, Purchased, PurchasedOrFlagged]


async def resolve_eligibility(repos: Repositories, user: User, employee_domain: str) -> RankEligibility:
    if is_employee_admin(user, employee_domain):
        return AllCatalog()
    purchased = frozenset(await repos.orders.purchased_product_ids(user.id))
    flagged = frozenset(await repos.metadata.force_rankable_ids())
    if not flagged:
        return Purchased(purchased)
    return PurchasedOrFlagged(purchased, flagged)
