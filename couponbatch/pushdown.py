"""
Server-side rendering of the coupon rule.

The CASE expression is built from the same ``CouponClassifier`` tiers the
client evaluates, so the set-based statement and the row-wise writers share
one definition of the rule. Substring tests go through ``text_position`` whose
SQL depends on the dialect.
"""

from sqlalchemy import Integer, and_, case, func, literal
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql.elements import ColumnElement
from sqlalchemy.sql.functions import FunctionElement

from couponbatch.classifier import CouponClassifier


class text_position(FunctionElement):
    """1-based position of ``needle`` in ``haystack``; 0 when absent."""

    type = Integer()
    inherit_cache = True
    name = "text_position"


@compiles(text_position)
def _position(element, compiler, **kw):
    haystack, needle = list(element.clauses)
    return "POSITION(%s IN %s)" % (compiler.process(needle, **kw), compiler.process(haystack, **kw))


@compiles(text_position, "sqlite")
@compiles(text_position, "oracle")
def _instr(element, compiler, **kw):
    return "INSTR(%s)" % compiler.process(element.clauses, **kw)


def address_expression(address1: ColumnElement, address2: ColumnElement) -> ColumnElement:
    # " " || NULL is NULL, so the separator disappears with a missing address2.
    return func.coalesce(address1, "") + func.coalesce(literal(" ") + address2, "")


def coupon_code_expression(
    classifier: CouponClassifier,
    limit: ColumnElement,
    category: ColumnElement,
    address: ColumnElement,
) -> ColumnElement:
    whens = []
    for tier in classifier.tiers:
        code = _tier_code(classifier, tier.code, category, address)
        if tier.upper_bound is None:
            whens.append((limit.is_not(None), code))
        else:
            whens.append((limit < tier.upper_bound, code))
    return case(*whens, else_=None)


def _tier_code(classifier: CouponClassifier, tier_code: str, category: ColumnElement, address: ColumnElement):
    exception = classifier.exception
    if exception is None or exception.tier_code != tier_code:
        return literal(tier_code)
    condition = and_(
        category == exception.category,
        *[text_position(address, term) > 0 for term in exception.required_terms],
    )
    return case((condition, literal(exception.code)), else_=literal(tier_code))
