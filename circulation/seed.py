"""Sample consortium for a fresh database.

Four branches, a few members and a small classic-fiction catalog. Copies
are spread across the branches in turn so every branch starts with stock.
"""

import logging
from typing import Dict

from circulation.directory import Directory
from circulation.models import CopyCondition, MembershipTier, UserRole, utcnow

logger = logging.getLogger(__name__)

LIBRARIES = [
    # id, name, code, borrowing limit, loan period, fine rate
    ("lib-central", "Central Public Library", "LIB-CENTRAL", 5, 14, 0.50),
    ("lib-north", "Northside Branch Library", "LIB-NORTH", 3, 14, 0.50),
    ("lib-east", "Eastside Community Library", "LIB-EAST", 4, 21, 0.25),
    ("lib-univ", "University Branch Library", "LIB-UNIV", 10, 30, 1.00),
]

USERS = [
    # id, name, email, role, tier, parent
    ("librarian", "Lena Librarian", "lena@consortium.example", UserRole.LIBRARIAN, MembershipTier.STANDARD, None),
    ("ada", "Ada Lovelace", "ada@consortium.example", UserRole.MEMBER, MembershipTier.PREMIUM, None),
    ("ben", "Ben Okafor", "ben@consortium.example", UserRole.MEMBER, MembershipTier.STUDENT, None),
    ("faye", "Faye Moreau", "faye@consortium.example", UserRole.MEMBER, MembershipTier.FACULTY, None),
    ("casey", "Casey Rivera", "casey@consortium.example", UserRole.MEMBER, MembershipTier.STANDARD, None),
    ("casey-jr", "Casey Rivera Jr.", "casey.jr@consortium.example", UserRole.MEMBER, MembershipTier.STANDARD, "casey"),
]

CATALOG = [
    # slug, title, author, isbn, replacement cost, copies
    ("gatsby", "The Great Gatsby", "F. Scott Fitzgerald", "9780743273565", 15.00, 5),
    ("mockingbird", "To Kill a Mockingbird", "Harper Lee", "9780061120084", 14.00, 3),
    ("1984", "1984", "George Orwell", "9780451524935", 10.00, 4),
    ("pride", "Pride and Prejudice", "Jane Austen", "9781503290563", 12.00, 6),
    ("catcher", "The Catcher in the Rye", "J.D. Salinger", "9780316769488", 11.00, 4),
]

_CONDITIONS = (CopyCondition.NEW, CopyCondition.GOOD, CopyCondition.FAIR)


def seed_sample_consortium(directory: Directory, clock=utcnow) -> Dict[str, int]:
    """Load the sample consortium. Does nothing if any library already exists."""
    counts = {"libraries": 0, "users": 0, "editions": 0, "copies": 0}
    if directory.list_active_libraries():
        logger.info("Libraries already exist; skipping seed")
        return counts

    for library_id, name, code, limit, period, rate in LIBRARIES:
        directory.add_library(
            library_id, name, code, loan_period_days=period, fine_rate_per_day=rate, borrowing_limit=limit
        )
        counts["libraries"] += 1

    for user_id, name, email, role, tier, parent in USERS:
        directory.add_user(user_id, name, email, role=role, membership_type=tier, parent_account_id=parent)
        counts["users"] += 1

    slot = 0
    for slug, title, author, isbn, cost, copies in CATALOG:
        directory.add_work(f"w-{slug}", title, author)
        directory.add_edition(f"ed-{slug}", f"w-{slug}", isbn, replacement_cost=cost)
        counts["editions"] += 1
        for n in range(1, copies + 1):
            library_id = LIBRARIES[slot % len(LIBRARIES)][0]
            directory.add_copy(
                f"{slug}-{n:02d}",
                f"ed-{slug}",
                library_id,
                condition=_CONDITIONS[slot % len(_CONDITIONS)],
                acquired_date=clock(),
            )
            slot += 1
            counts["copies"] += 1

    logger.info(f"Seeded {counts['libraries']} libraries, {counts['editions']} editions, {counts['copies']} copies")
    return counts
