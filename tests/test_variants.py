"""
tests/test_variants.py

Unit tests for role -> variant resolution.
"""

from __future__ import annotations

import pytest

from compensation.components import PlanVariant
from compensation.variants import (
    REASON_AMBIGUOUS,
    REASON_NO_MATCH,
    VariantResolver,
    normalize_role,
)
from tests.factories import variant


def _variants(*specs: tuple[str, str, bool]) -> list[PlanVariant]:
    return [PlanVariant.model_validate(variant(vid, name, is_default=default)) for vid, name, default in specs]


@pytest.fixture()
def resolver() -> VariantResolver:
    return VariantResolver()


class TestNormalizeRole:
    def test_case_accents_and_spacing(self) -> None:
        assert normalize_role("  Optometrista   NO  Certificádo ") == "optometrista no certificado"

    def test_empty(self) -> None:
        assert normalize_role(None) == ""
        assert normalize_role("   ") == ""


class TestVariantResolver:
    def test_longest_containing_name_wins(self, resolver) -> None:
        variants = _variants(("cert", "certificado", False), ("nocert", "no certificado", False))
        resolution = resolver.resolve("OPTOMETRISTA NO CERTIFICADO", variants)
        assert resolution.variant is not None
        assert resolution.variant.variant_id == "nocert"
        assert resolution.strategy == "contains"

    def test_order_of_declaration_does_not_matter(self, resolver) -> None:
        variants = _variants(("nocert", "no certificado", False), ("cert", "certificado", False))
        resolution = resolver.resolve("OPTOMETRISTA NO CERTIFICADO", variants)
        assert resolution.variant.variant_id == "nocert"

    def test_shorter_name_still_matches_its_own_role(self, resolver) -> None:
        variants = _variants(("cert", "certificado", False), ("nocert", "no certificado", False))
        resolution = resolver.resolve("Optometrista Certificado", variants)
        assert resolution.variant.variant_id == "cert"

    def test_exact_match_preferred(self, resolver) -> None:
        variants = _variants(("a", "Gerente", False), ("b", "Gerente de Tienda", False))
        resolution = resolver.resolve("gerente", variants)
        assert resolution.variant.variant_id == "a"
        assert resolution.strategy == "exact"

    def test_equal_length_matches_are_ambiguous(self, resolver) -> None:
        variants = _variants(("x", "ventas", False), ("y", "cajero", False))
        resolution = resolver.resolve("cajero ventas", variants)
        assert resolution.variant is None
        assert resolution.reason == REASON_AMBIGUOUS
        assert set(resolution.candidates) == {"x", "y"}

    def test_default_variant_when_nothing_matches(self, resolver) -> None:
        variants = _variants(("a", "certificado", False), ("std", "Standard", True))
        resolution = resolver.resolve("Auxiliar", variants)
        assert resolution.variant.variant_id == "std"
        assert resolution.strategy == "default"

    def test_single_variant_plan_applies_to_everyone(self, resolver) -> None:
        variants = _variants(("only", "Asesor", False))
        resolution = resolver.resolve(None, variants)
        assert resolution.variant.variant_id == "only"
        assert resolution.strategy == "single"

    def test_no_match_without_default_excludes(self, resolver) -> None:
        variants = _variants(("a", "certificado", False), ("b", "gerente", False))
        resolution = resolver.resolve("Auxiliar", variants)
        assert resolution.variant is None
        assert resolution.reason == REASON_NO_MATCH
        assert not resolution.resolved
