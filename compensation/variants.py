"""
compensation/variants.py

Variant resolver: picks the plan variant for an individual's role text.

Order of precedence
-------------------
1. Exact match of the normalised role and variant name.
2. Containment of the variant name in the role, longest name first, so
   "no certificado" wins over "certificado" for "OPTOMETRISTA NO CERTIFICADO".
3. The variant flagged ``isDefault``, or the only variant of the plan.

Two different names of the same matched length are ambiguous; the
individual is excluded with reason ``ambiguous_variant``. No match and no
default excludes with ``no_matching_variant``.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from typing import Sequence

from compensation.components import PlanVariant

REASON_AMBIGUOUS = "ambiguous_variant"
REASON_NO_MATCH = "no_matching_variant"

_WHITESPACE = re.compile(r"\s+")


def normalize_role(text: str | None) -> str:
    """Lower-case, strip accents and collapse whitespace."""

    if not text:
        return ""
    decomposed = unicodedata.normalize("NFKD", text)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _WHITESPACE.sub(" ", stripped.casefold()).strip()


@dataclass(frozen=True)
class VariantResolution:
    variant: PlanVariant | None
    strategy: str
    reason: str | None = None
    candidates: tuple[str, ...] = ()

    @property
    def resolved(self) -> bool:
        return self.variant is not None


class VariantResolver:
    def resolve(self, role: str | None, variants: Sequence[PlanVariant]) -> VariantResolution:
        normalized_role = normalize_role(role)
        named = [(normalize_role(v.variant_name), v) for v in variants]

        if normalized_role:
            exact = [v for name, v in named if name and name == normalized_role]
            if len(exact) == 1:
                return VariantResolution(variant=exact[0], strategy="exact")
            if len(exact) > 1:
                return VariantResolution(
                    variant=None,
                    strategy="exact",
                    reason=REASON_AMBIGUOUS,
                    candidates=tuple(v.variant_id for v in exact),
                )

            contained = [(name, v) for name, v in named if name and name in normalized_role]
            contained.sort(key=lambda item: len(item[0]), reverse=True)
            if contained:
                best_length = len(contained[0][0])
                tied = [v for name, v in contained if len(name) == best_length]
                if len(tied) > 1:
                    return VariantResolution(
                        variant=None,
                        strategy="contains",
                        reason=REASON_AMBIGUOUS,
                        candidates=tuple(v.variant_id for v in tied),
                    )
                return VariantResolution(variant=contained[0][1], strategy="contains")

        defaults = [v for v in variants if v.is_default]
        if len(defaults) == 1:
            return VariantResolution(variant=defaults[0], strategy="default")
        if not defaults and len(variants) == 1:
            return VariantResolution(variant=variants[0], strategy="single")

        return VariantResolution(variant=None, strategy="none", reason=REASON_NO_MATCH)
