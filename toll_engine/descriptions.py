"""
Invoice line description matching.
Table-driven rule set deciding whether a free-text invoice line describes a
given toll group (toll tag, date label, country label, weekday, placeholder).
"""
import re
import unicodedata
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from typing import Dict, List, Optional, Sequence, Set

from config import config
from .mappings import COUNTRY_DESCRIPTION_LABELS
from .schemas import Group, InvoiceLine

_DATE_LABEL_RE = re.compile(r"\b(\d{2})-(\d{2})-(\d{4})\b")


def fold(text: str) -> str:
    """Lowercase and strip accents so 'België' and 'belgie' compare equal."""
    decomposed = unicodedata.normalize("NFKD", text or "")
    return "".join(c for c in decomposed if not unicodedata.combining(c)).lower()


def date_label(usage_date: date) -> str:
    return usage_date.strftime("%d-%m-%Y")


def line_countries(line: InvoiceLine) -> Set[str]:
    """
    ISO codes of the countries a line names.

    Countries with a Dutch label are found by name; others by an upper-case
    ISO code right after the toll tag, as in "Tol SE".
    """
    text = fold(line.description)
    found = {code for code, label in COUNTRY_DESCRIPTION_LABELS.items() if fold(label) in text}
    tag = re.escape(config.reconciliation.toll_tag)
    found.update(re.findall(rf"(?i:\b{tag})\s+([A-Z]{{2}})\b", line.description or ""))
    return found


@dataclass(frozen=True)
class DescriptionContext:
    """What a matching line has to say about one toll group."""
    usage_date: date
    weekday: str
    country: str
    vat_rate: int

    @classmethod
    def for_group(cls, group: Group) -> "DescriptionContext":
        return cls(group.usage_date, group.weekday, group.country, group.vat_rate)

    @property
    def date_label(self) -> str:
        return date_label(self.usage_date)

    @property
    def country_label(self) -> str:
        """Dutch country name, or the ISO code for countries without one."""
        return COUNTRY_DESCRIPTION_LABELS.get(self.country, self.country)


class DescriptionRule(ABC):
    """One independently testable check of a line against a context."""

    @property
    @abstractmethod
    def rule_id(self) -> str:
        """Unique identifier for this rule."""
        pass

    @abstractmethod
    def matches(self, line: InvoiceLine, context: Optional[DescriptionContext]) -> bool:
        pass


class TollTagRule(DescriptionRule):
    """Description carries the toll tag as a word."""

    @property
    def rule_id(self) -> str:
        return "TOLL_TAG"

    def matches(self, line, context=None):
        tag = re.escape(fold(config.reconciliation.toll_tag))
        return re.search(rf"\b{tag}\b", fold(line.description)) is not None


class DateLabelRule(DescriptionRule):
    @property
    def rule_id(self) -> str:
        return "DATE_LABEL"

    def matches(self, line, context):
        return context.date_label in line.description


class CountryLabelRule(DescriptionRule):
    """Description names the group's country, by Dutch label or ISO code."""

    @property
    def rule_id(self) -> str:
        return "COUNTRY_LABEL"

    def matches(self, line, context):
        return context.country in line_countries(line)


class WeekdayRule(DescriptionRule):
    @property
    def rule_id(self) -> str:
        return "WEEKDAY"

    def matches(self, line, context):
        return re.search(rf"\b{context.weekday}\b", fold(line.description)) is not None


class VatRateRule(DescriptionRule):
    @property
    def rule_id(self) -> str:
        return "VAT_RATE"

    def matches(self, line, context):
        return int(line.vat_rate) == int(context.vat_rate)


class PlaceholderRule(DescriptionRule):
    """Zero quantity and zero unit price."""

    @property
    def rule_id(self) -> str:
        return "PLACEHOLDER"

    def matches(self, line, context=None):
        return line.amount_is_zero


DUPLICATE_RULES = ("TOLL_TAG", "DATE_LABEL", "COUNTRY_LABEL", "WEEKDAY", "VAT_RATE")
PLACEHOLDER_RULES = ("TOLL_TAG", "PLACEHOLDER", "DATE_LABEL", "VAT_RATE")


class LineDescriptionMatcher:
    """
    Registry of description rules plus the line lookups the reconciler needs.

    Adding a rule:
    1. Create a DescriptionRule subclass
    2. Register it here
    3. Reference its rule_id in a rule combination
    """

    def __init__(self):
        self._rules: Dict[str, DescriptionRule] = {}

    def register(self, rule: DescriptionRule):
        self._rules[rule.rule_id] = rule

    def get_rule(self, rule_id: str) -> Optional[DescriptionRule]:
        return self._rules.get(rule_id)

    def get_all_rules(self) -> List[DescriptionRule]:
        return list(self._rules.values())

    def matches_all(self, line: InvoiceLine, context: Optional[DescriptionContext], rule_ids: Sequence[str]) -> bool:
        return all(self._rules[rule_id].matches(line, context) for rule_id in rule_ids)

    def is_toll_line(self, line: InvoiceLine) -> bool:
        return self._rules["TOLL_TAG"].matches(line, None)

    def is_placeholder(self, line: InvoiceLine) -> bool:
        return self.is_toll_line(line) and self._rules["PLACEHOLDER"].matches(line, None)

    def find_duplicate_lines(self, lines: Sequence[InvoiceLine], context: DescriptionContext) -> List[InvoiceLine]:
        """Toll lines already billing this day/country/vat with a nonzero amount."""
        return [
            line for line in lines
            if self.matches_all(line, context, DUPLICATE_RULES)
            and line.total != 0
        ]

    def find_placeholder(self, lines: Sequence[InvoiceLine], context: DescriptionContext) -> Optional[InvoiceLine]:
        """
        Placeholder line for this day and vat rate.

        One naming the group's country is preferred; otherwise a placeholder
        naming no country at all is used. Placeholders for other countries are
        left alone.
        """
        candidates = [line for line in lines if self.matches_all(line, context, PLACEHOLDER_RULES)]
        for line in candidates:
            if self._rules["COUNTRY_LABEL"].matches(line, context):
                return line
        for line in candidates:
            if not self.mentions_any_country(line):
                return line
        return None

    @staticmethod
    def mentions_any_country(line: InvoiceLine) -> bool:
        return bool(line_countries(line))

    @staticmethod
    def line_date(line: InvoiceLine) -> Optional[date]:
        """Usage date written on a line as dd-mm-yyyy, if any."""
        match = _DATE_LABEL_RE.search(line.description or "")
        if not match:
            return None
        day, month, year = (int(part) for part in match.groups())
        try:
            return date(year, month, day)
        except ValueError:
            return None

    @staticmethod
    def format_line_description(context: DescriptionContext) -> str:
        """'Maandag 05-01-2026\\nTol België', or '...\\nTol SE' without a Dutch label"""
        tag = config.reconciliation.toll_tag.capitalize()
        return f"{context.weekday.capitalize()} {context.date_label}\n{tag} {context.country_label}"


def build_default_matcher() -> LineDescriptionMatcher:
    matcher = LineDescriptionMatcher()
    for rule in (TollTagRule(), DateLabelRule(), CountryLabelRule(), WeekdayRule(), VatRateRule(), PlaceholderRule()):
        matcher.register(rule)
    return matcher


default_matcher = build_default_matcher()

