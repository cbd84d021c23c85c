from typing import Iterable

from .schemas import RoleMappingConfig


BASELINE_ROLE = "member"


def resolve_role(
    external_values: Iterable[str],
    mapping: RoleMappingConfig,
    baseline_role: str = BASELINE_ROLE,
) -> str:
    """
    Resolve the tenant role for a set of IdP groups/roles.

    The first mapping, in ascending priority (declaration order breaks ties),
    whose source value is present wins. Without a match the provider default
    role applies, and without one of those the platform baseline role.
    """
    present = {value for value in external_values if value}

    ordered = sorted(
        enumerate(mapping.mappings), key=lambda item: (item[1].priority, item[0])
    )
    for _, rule in ordered:
        if rule.source in present:
            return rule.role

    return mapping.default_role or baseline_role
