from __future__ import annotations

import math
import re
import unicodedata
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, NamedTuple, Optional, Tuple

from pipeline.language import Lang


class Category(str, Enum):
    OTP = "otp"
    BANK_ACCOUNT = "bank_account"
    CARD_NUMBER = "card_number"
    CARD_CVV = "card_cvv"
    CARD_EXPIRY = "card_expiry"
    ROUTING = "routing"
    PAYMENT_ALT = "payment_alt"
    AUTHORITY = "authority"
    URGENCY = "urgency"
    SECRECY = "secrecy"
    REMOTE = "remote"
    THREAT = "threat"
    IDENTITY = "identity"
    STOCK_BROKER = "stock_broker"


# Sensitive-data asks first, soft social-engineering cues last.
REASON_PRIORITY: Tuple[Category, ...] = (
    Category.OTP,
    Category.CARD_NUMBER,
    Category.CARD_CVV,
    Category.CARD_EXPIRY,
    Category.BANK_ACCOUNT,
    Category.ROUTING,
    Category.STOCK_BROKER,
    Category.PAYMENT_ALT,
    Category.REMOTE,
    Category.AUTHORITY,
    Category.SECRECY,
    Category.THREAT,
    Category.URGENCY,
    Category.IDENTITY,
)

MAX_REASONS = 5
SNIPPET_PAD = 30
CONTEXT_GAP = 40
SATURATION = 2.5
# Multiplier for the 1st, 2nd and 3rd+ hit of the same category within one call.
REPEAT_ATTENUATION = (1.0, 0.7, 0.5)

# Categories whose hits may not share characters (one long digit run can be
# seen by several card rules when a language set is stacked on English).
_EXCLUSIVE_SPAN_CATEGORIES = frozenset({Category.CARD_NUMBER})


@dataclass
class MatchHit:
    category: Category
    weight: float
    phrase: str
    index: int
    snippet: str


@dataclass
class AnalysisResult:
    score: int
    reasons: List[str] = field(default_factory=list)
    hits: List[MatchHit] = field(default_factory=list)

    def evidence(self, limit: int = 12) -> List[dict]:
        return [
            {"category": h.category.value, "snippet": " ".join(h.snippet.split())}
            for h in self.hits[:limit]
        ]


class _Found(NamedTuple):
    phrase: str
    start: int
    end: int
    # Span of the value token; equals (start, end) for plain phrases.
    value_start: int
    value_end: int


class PhraseMatcher:
    """Every non-overlapping occurrence of a pattern is one match."""

    def __init__(self, pattern: str) -> None:
        self.regex = re.compile(pattern)

    def find(self, text: str) -> Iterator[_Found]:
        for m in self.regex.finditer(text):
            yield _Found(m.group(0), m.start(), m.end(), m.start(), m.end())


class ContextMatcher:
    """A context phrase followed, within CONTEXT_GAP chars, by a value token."""

    gap = r"[^\n]"

    def __init__(self, context: str, value: str) -> None:
        self.regex = re.compile(
            rf"(?:{context}){self.gap}{{0,{CONTEXT_GAP}}}?(?P<value>{value})"
        )

    def accept(self, value: str) -> bool:
        return True

    def find(self, text: str) -> Iterator[_Found]:
        for m in self.regex.finditer(text):
            value = m.group("value")
            if not self.accept(value):
                continue
            yield _Found(value.strip(), m.start(), m.end(), m.start("value"), m.end("value"))


class CardNumberMatcher(ContextMatcher):
    """Card context near a 12-19 digit run that passes the Luhn checksum."""

    gap = r"[^.\n]"

    def __init__(self, context: str) -> None:
        super().__init__(context, r"(?:\d[ -]?){12,19}")

    def accept(self, value: str) -> bool:
        return luhn_valid(value)


@dataclass(frozen=True)
class Rule:
    category: Category
    weight: float
    reason: str
    matcher: object

    def find(self, text: str) -> Iterator[_Found]:
        return self.matcher.find(text)


def luhn_valid(number: str) -> bool:
    digits = [int(c) for c in number if c.isdigit()]
    if len(digits) < 12 or len(digits) > 19:
        return False
    total = 0
    for i, d in enumerate(reversed(digits)):
        if i % 2 == 1:
            d *= 2
            if d > 9:
                d -= 9
        total += d
    return total % 10 == 0


def normalize(text: Optional[str]) -> str:
    """Lower-case and strip diacritics so "código" and "codigo" match alike."""
    decomposed = unicodedata.normalize("NFD", (text or "").lower())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def _snippet(text: str, start: int, end: int) -> str:
    return text[max(0, start - SNIPPET_PAD) : min(len(text), end + SNIPPET_PAD)].strip()


def _phrase(category: Category, weight: float, reason: str, pattern: str) -> Rule:
    return Rule(category, weight, reason, PhraseMatcher(pattern))


def _context(category: Category, weight: float, reason: str, context: str, value: str) -> Rule:
    return Rule(category, weight, reason, ContextMatcher(context, value))


def _card(weight: float, reason: str, context: str) -> Rule:
    return Rule(Category.CARD_NUMBER, weight, reason, CardNumberMatcher(context))


# ---------------------------------------------------------------------------
# Value tokens (patterns are written against normalized text)
# ---------------------------------------------------------------------------

OTP_VALUE = r"\b\d{4,8}\b"
ACCOUNT_VALUE = r"\b\d{6,18}\b"
ROUTING_VALUE = r"\b(?=[a-z]*\d)[a-z0-9]{6,34}\b"
CVV_VALUE = r"\b\d{3,4}\b"
EXPIRY_VALUE = r"\b(?:0[1-9]|1[0-2])\s*[/-]\s*\d{2,4}\b"

CARD_CONTEXT_EN = r"(?:card (?:number|no\.?)|debit|credit|visa|mastercard|amex)"


def _rules_en() -> Tuple[Rule, ...]:
    otp_ctx = r"\b(?:otp|one[-\s]?time\s*(?:password|passcode|code)|verification code|6[-\s]?digit code)\b"
    bank_ctx = r"\b(?:account (?:number|no\.?)|acct\.?|iban|ifsc|sort code|routing number|swift|bic|bank details?)\b"
    routing_ctx = r"\b(?:iban|ifsc|sort code|routing number|swift|bic)\b"
    cvv_ctx = r"\b(?:cvv|cvc|security code)\b"
    expiry_ctx = r"\b(?:expiry|expiration|valid (?:thru|through))\b"

    return (
        _context(Category.OTP, 3.0, "Requested your one-time passcode (OTP)", otp_ctx, OTP_VALUE),
        _context(Category.BANK_ACCOUNT, 2.6, "Asked for bank account/IBAN/routing details", bank_ctx, ACCOUNT_VALUE),
        _card(3.0, "Asked for your full card number", CARD_CONTEXT_EN),
        _context(Category.CARD_CVV, 3.0, "Asked for your CVV/security code", cvv_ctx, CVV_VALUE),
        _context(Category.CARD_EXPIRY, 1.6, "Asked for your card expiry date", expiry_ctx, EXPIRY_VALUE),
        _context(Category.ROUTING, 2.0, "Asked for IBAN/SWIFT/IFSC/routing code", routing_ctx, ROUTING_VALUE),
        _phrase(
            Category.PAYMENT_ALT, 1.8, "Requested payment via gift cards/crypto/wire transfer",
            r"\b(?:gift\s*card|google play|apple (?:gift )?card|steam card|bitcoin|crypto|usdt"
            r"|wire transfer|western union|moneygram|prepaid)\b",
        ),
        _phrase(
            Category.AUTHORITY, 1.2, "Claimed authority to pressure you",
            r"\b(?:bank (?:security|fraud) (?:team|department)|irs|social security|police|fbi|customs)\b",
        ),
        _phrase(
            Category.URGENCY, 0.9, "Used urgency to force quick action",
            r"\b(?:urgent|immediately|right now|do not hang up|stay on the line|act now)\b",
        ),
        _phrase(
            Category.SECRECY, 1.0, "Told you to keep it secret",
            r"\b(?:keep (?:this|it) (?:secret|between us)|do not tell|don'?t tell anyone)\b",
        ),
        _phrase(
            Category.REMOTE, 1.6, "Asked you to install remote access tools",
            r"\b(?:anydesk|teamviewer|remote access|install (?:anydesk|teamviewer))\b",
        ),
        _phrase(
            Category.THREAT, 1.3, "Threatened legal/account consequences",
            r"\b(?:legal action|lawsuit|arrest|account (?:compromised|suspended|locked))\b",
        ),
        _phrase(
            Category.IDENTITY, 1.2, "Asked to verify your identity",
            r"\b(?:verify|confirm).{0,12}(?:your )?identity\b",
        ),
        _phrase(
            Category.STOCK_BROKER, 1.6, "Asked for broker/Demat credentials or pressured trades",
            r"\b(?:broker|demat|dp id|portfolio|holdings|trading (?:password|pin)|sell (?:your )?shares|insider)\b",
        ),
        # Keyword-only safety nets: no value token required.
        _phrase(
            Category.OTP, 2.0, "Asked for an OTP/verification code",
            r"\b(?:otp|one[-\s]?time\s*(?:password|passcode|code)|verification code)\b",
        ),
        _phrase(
            Category.BANK_ACCOUNT, 2.2, "Asked for bank details/account numbers",
            r"\b(?:bank details?|account (?:number|no\.?)|iban|swift|bic|routing number|sort code)\b",
        ),
        _phrase(
            Category.ROUTING, 1.6, "Asked for IBAN/SWIFT/IFSC/routing",
            r"\b(?:iban|swift|bic|ifsc|routing number|sort code)\b",
        ),
        _phrase(
            Category.STOCK_BROKER, 1.8, "Asked for trading/broker password or PIN",
            r"\b(?:trading|broker|demat).{0,16}(?:password|pin|passcode)\b",
        ),
        _phrase(
            Category.IDENTITY, 1.4, "Asked for banking/trading password or PIN",
            r"\b(?:netbanking|bank|trading).{0,12}(?:password|pin)\b",
        ),
    )


def _rules_es() -> Tuple[Rule, ...]:
    otp_ctx = r"\b(?:otp|codigo(?: de)? verificacion|clave de un solo uso|6[-\s]?digitos)\b"
    bank_ctx = r"\b(?:numero de cuenta|iban|swift|bic|codigo (?:de )?bancario|datos bancarios)\b"
    cvv_ctx = r"\b(?:cvv|cvc|codigo de seguridad)\b"
    expiry_ctx = r"\b(?:vigencia|vencimiento|valido hasta)\b"
    card_ctx = r"(?:numero de (?:la )?tarjeta|tarjeta de (?:credito|debito)|visa|mastercard|amex)"

    return (
        _context(Category.OTP, 3.0, "Le solicitaron su código OTP", otp_ctx, OTP_VALUE),
        _context(Category.BANK_ACCOUNT, 2.5, "Pidieron su número de cuenta/IBAN/SWIFT", bank_ctx, ACCOUNT_VALUE),
        _card(3.0, "Pidieron el número completo de su tarjeta", card_ctx),
        _context(Category.CARD_CVV, 3.0, "Pidieron el CVV/código de seguridad", cvv_ctx, CVV_VALUE),
        _context(Category.CARD_EXPIRY, 1.5, "Pidieron la fecha de vencimiento de la tarjeta", expiry_ctx, EXPIRY_VALUE),
        _phrase(
            Category.PAYMENT_ALT, 1.7, "Piden pago con tarjetas de regalo/cripto/transferencia",
            r"\b(?:tarjetas? de regalo|bitcoin|cripto|transferencia|western union|moneygram|prepago)\b",
        ),
        _phrase(
            Category.OTP, 2.0, "Le solicitaron código OTP/verificación",
            r"\b(?:otp|codigo (?:de )?verificacion|clave de un solo uso)\b",
        ),
        _phrase(
            Category.BANK_ACCOUNT, 2.2, "Pidieron datos bancarios/número de cuenta",
            r"\b(?:datos bancarios|numero de cuenta|iban|swift|bic|clave interbancaria)\b",
        ),
        _phrase(
            Category.STOCK_BROKER, 1.8, "Pidieron clave/PIN de trading o bróker",
            r"\b(?:trading|broker).{0,16}(?:contrasena|pin|clave)\b",
        ),
    )


def _rules_fr() -> Tuple[Rule, ...]:
    otp_ctx = r"\b(?:otp|code (?:de )?verification|mot de passe (?:unique|a usage unique)|6[-\s]?chiffres)\b"
    bank_ctx = r"\b(?:iban|swift|bic|numero de compte|coordonnees bancaires)\b"
    cvv_ctx = r"\b(?:cvv|cvc|cryptogramme(?: visuel)?)\b"
    expiry_ctx = r"\b(?:date d'expiration|valable jusqu'?(?:au|a))\b"
    card_ctx = r"(?:numero de (?:la )?carte|carte (?:bancaire|de credit|de debit)|visa|mastercard|amex)"

    return (
        _context(Category.OTP, 3.0, "Code OTP demandé", otp_ctx, OTP_VALUE),
        _context(Category.BANK_ACCOUNT, 2.5, "Demande d'IBAN/SWIFT/numéro de compte", bank_ctx, ACCOUNT_VALUE),
        _card(3.0, "Demande du numéro complet de carte", card_ctx),
        _context(Category.CARD_CVV, 3.0, "Demande du CVV/cryptogramme", cvv_ctx, CVV_VALUE),
        _context(Category.CARD_EXPIRY, 1.5, "Demande de la date d'expiration de la carte", expiry_ctx, EXPIRY_VALUE),
        _phrase(
            Category.PAYMENT_ALT, 1.7, "Demande de paiement via cartes cadeaux/crypto/virement",
            r"\b(?:cartes? cadeaux?|bitcoin|crypto|virement|western union|moneygram|prepayee?s?)\b",
        ),
        _phrase(
            Category.OTP, 2.0, "Code OTP / vérification demandé",
            r"\b(?:otp|code (?:de )?verification|mot de passe (?:unique|a usage unique))\b",
        ),
        _phrase(
            Category.BANK_ACCOUNT, 2.2, "Demande de coordonnées bancaires/numéro de compte",
            r"\b(?:coordonnees bancaires|numero de compte|iban|swift|bic)\b",
        ),
        _phrase(
            Category.STOCK_BROKER, 1.8, "Demande de mot de passe/PIN de trading/broker",
            r"\b(?:trading|broker|courtier).{0,16}(?:mot de passe|code|pin)\b",
        ),
    )


def _rules_de() -> Tuple[Rule, ...]:
    card_ctx = r"(?:kartennummer|kreditkarte|debitkarte|visa|mastercard|amex)"
    cvv_ctx = r"\b(?:cvv|cvc|prufnummer|sicherheitscode)\b"

    return (
        _card(3.0, "Vollständige Kartennummer verlangt", card_ctx),
        _context(Category.CARD_CVV, 3.0, "CVV/Prüfnummer verlangt", cvv_ctx, CVV_VALUE),
        _phrase(
            Category.PAYMENT_ALT, 1.6, "Zahlung per Geschenkkarten/Krypto/Überweisung verlangt",
            r"\b(?:geschenkkarten?|bitcoin|krypto|uberweisung|western union|moneygram|prepaid)\b",
        ),
        _phrase(
            Category.REMOTE, 1.6, "Fernzugriffs-Tools angefordert",
            r"\b(?:fernzugriff|anydesk|teamviewer)\b",
        ),
        _phrase(
            Category.OTP, 2.0, "Einmalcode/Verifizierungscode angefordert",
            r"\b(?:otp|einmal(?:code|passwort)|verifizierungscode)\b",
        ),
        _phrase(
            Category.BANK_ACCOUNT, 2.0, "Bankdaten/Kontonummer angefordert",
            r"\b(?:iban|swift|bic|kontonummer|bankdaten)\b",
        ),
    )


_EN = _rules_en()

# Non-English sets keep the English rules as a safety net.
RULESETS: Dict[Lang, Tuple[Rule, ...]] = {
    Lang.EN: _EN,
    Lang.ES: _rules_es() + _EN,
    Lang.FR: _rules_fr() + _EN,
    Lang.DE: _rules_de() + _EN,
}


def rules_for(lang) -> Tuple[Rule, ...]:
    return RULESETS[Lang.parse(lang)]


def saturating_score(total: float) -> int:
    """Map a summed weight onto 0..100; one ~3.0 hit lands near 70."""
    s = 1.0 - math.exp(-total / SATURATION)
    return int(round(100.0 * max(0.0, min(1.0, s))))


def _overlaps(start: int, end: int, spans: List[Tuple[int, int]]) -> bool:
    return any(start < e and s < end for s, e in spans)


def analyze(text_raw: Optional[str], lang=Lang.EN) -> AnalysisResult:
    """Score a transcript window against the rule set for ``lang``.

    Pure and total: the same input always yields the same result and an
    empty string scores 0.
    """
    text = normalize(text_raw)
    if not text.strip():
        return AnalysisResult(score=0)

    hits: List[MatchHit] = []
    reason_for: Dict[Category, str] = {}
    claimed: Dict[Category, List[Tuple[int, int]]] = {}

    for rule in rules_for(lang):
        for found in rule.find(text):
            if rule.category in _EXCLUSIVE_SPAN_CATEGORIES:
                spans = claimed.setdefault(rule.category, [])
                if _overlaps(found.value_start, found.value_end, spans):
                    continue
                spans.append((found.value_start, found.value_end))
            hits.append(
                MatchHit(
                    category=rule.category,
                    weight=rule.weight,
                    phrase=found.phrase,
                    index=found.start,
                    snippet=_snippet(text, found.start, found.end),
                )
            )
            reason_for.setdefault(rule.category, rule.reason)

    # Repeats of one category count for less each time
    seen: Dict[Category, int] = {}
    total = 0.0
    for hit in hits:
        n = seen.get(hit.category, 0)
        total += hit.weight * REPEAT_ATTENUATION[min(n, len(REPEAT_ATTENUATION) - 1)]
        seen[hit.category] = n + 1

    reasons: List[str] = []
    for category in REASON_PRIORITY:
        if category in reason_for and reason_for[category] not in reasons:
            reasons.append(reason_for[category])
        if len(reasons) >= MAX_REASONS:
            break

    return AnalysisResult(score=saturating_score(total), reasons=reasons, hits=hits)
