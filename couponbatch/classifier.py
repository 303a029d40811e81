from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal
import logging


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Tier:
    code: str
    upper_bound: Decimal | None  # exclusive; None means unbounded


@dataclass(frozen=True)
class ExceptionClause:
    """Replaces one tier's code when the category and every address term match."""

    tier_code: str
    code: str
    category: str
    required_terms: tuple[str, ...]

    def matches(self, category: str | None, address: str) -> bool:
        return category == self.category and all(term in address for term in self.required_terms)


DEFAULT_TIERS: tuple[Tier, ...] = (
    Tier("AA", Decimal("1000")),
    Tier("BB", Decimal("3000")),
    Tier("CC", Decimal("4000")),
    Tier("DD", None),
)

DEFAULT_EXCEPTION = ExceptionClause(tier_code="CC", code="C2", category="F", required_terms=("송파구", "풍납1동"))


def join_address(fragments: Iterable[str | None]) -> str:
    # Same shape as the pushed-down rule: a missing first fragment is empty text,
    # later fragments bring their separator only when present.
    first, *rest = fragments
    return (first or "") + "".join(" " + fragment for fragment in rest if fragment is not None)


def to_decimal(value: object) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (bool, bytes)) or value is None:
        raise TypeError(f"not a numeric limit: {value!r}")
    return Decimal(str(value))


class CouponClassifier:
    """Tiered coupon rule. Tiers are evaluated in ascending order of limit."""

    def __init__(
        self,
        tiers: tuple[Tier, ...] = DEFAULT_TIERS,
        exception: ExceptionClause | None = DEFAULT_EXCEPTION,
    ) -> None:
        bounds = [tier.upper_bound for tier in tiers]
        if not tiers or bounds[-1] is not None or any(bound is None for bound in bounds[:-1]):
            raise ValueError("tiers must be bounded except the last")
        if bounds[:-1] != sorted(bounds[:-1]):
            raise ValueError("tier bounds must ascend")
        if exception is not None and exception.tier_code not in {tier.code for tier in tiers}:
            raise ValueError(f"exception clause refines unknown tier '{exception.tier_code}'")
        self.tiers = tiers
        self.exception = exception

    @classmethod
    def with_exception(cls, category: str, required_terms: tuple[str, ...]) -> "CouponClassifier":
        return cls(exception=ExceptionClause("CC", "C2", category, tuple(required_terms)))

    @property
    def codes(self) -> set[str]:
        codes = {tier.code for tier in self.tiers}
        if self.exception is not None:
            codes.add(self.exception.code)
        return codes

    def classify(self, limit: object, category: str | None, address_fragments: Iterable[str | None]) -> str | None:
        try:
            if limit is None:
                return None
            amount = to_decimal(limit)
            for tier in self.tiers:
                if tier.upper_bound is None or amount < tier.upper_bound:
                    return self._refine(tier, category, address_fragments)
            return None
        except (ArithmeticError, TypeError, ValueError) as exc:
            logger.debug("limit could not be classified", extra={"limit": repr(limit), "error": str(exc)})
            return None

    def _refine(self, tier: Tier, category: str | None, address_fragments: Iterable[str | None]) -> str:
        if self.exception is not None and tier.code == self.exception.tier_code:
            if self.exception.matches(category, join_address(address_fragments)):
                return self.exception.code
        return tier.code
