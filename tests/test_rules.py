"""
Lexical rule engine tests: scoring, attenuation, contextual and Luhn-checked
detectors, reason ranking and language fallback.
"""

import os
import re
import sys
import unittest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "backend")))

from pipeline.language import Lang
from pipeline.rules import (
    Category,
    REASON_PRIORITY,
    analyze,
    luhn_valid,
    normalize,
    rules_for,
    saturating_score,
)


CARD_AND_CVV = "Please tell me your card number 4111 1111 1111 1111 and the CVV 123 right now"


def categories(result):
    return [h.category for h in result.hits]


class TestScoring(unittest.TestCase):

    def test_empty_text_scores_zero(self):
        for text in ("", "   ", None):
            result = analyze(text, Lang.EN)
            self.assertEqual(result.score, 0)
            self.assertEqual(result.reasons, [])
            self.assertEqual(result.hits, [])

    def test_benign_text_scores_zero(self):
        result = analyze("Hi mum, I'll be home for dinner around seven.", Lang.EN)
        self.assertEqual(result.score, 0)

    def test_scores_stay_in_range(self):
        samples = [
            "hello",
            CARD_AND_CVV,
            " ".join([CARD_AND_CVV] * 20),
            "urgent " * 200,
            "otp 123456 iban DE89370400440532013000 gift card bitcoin anydesk police arrest",
            "\n\n\t1234 5678",
        ]
        for text in samples:
            for lang in Lang:
                score = analyze(text, lang).score
                self.assertGreaterEqual(score, 0)
                self.assertLessEqual(score, 100)

    def test_analysis_is_pure(self):
        first = analyze(CARD_AND_CVV, Lang.EN)
        second = analyze(CARD_AND_CVV, Lang.EN)
        self.assertEqual(first, second)

    def test_single_high_weight_hit_saturates_quickly(self):
        result = analyze("and the cvv 123", Lang.EN)
        self.assertEqual(categories(result), [Category.CARD_CVV])
        self.assertEqual(result.hits[0].weight, 3.0)
        self.assertGreaterEqual(result.score, 65)
        self.assertEqual(result.score, saturating_score(3.0))

    def test_repeats_attenuate(self):
        # 0.9 + 0.9*0.7 + 0.9*0.5 + 0.9*0.5
        result = analyze("urgent urgent urgent urgent", Lang.EN)
        self.assertEqual(len(result.hits), 4)
        self.assertEqual(result.score, saturating_score(0.9 + 0.63 + 0.45 + 0.45))

    def test_same_category_scores_below_distinct_categories(self):
        same = analyze("anydesk. anydesk. anydesk.", Lang.EN)
        distinct = analyze("anydesk. demat. ifsc.", Lang.EN)
        self.assertEqual(categories(same), [Category.REMOTE] * 3)
        self.assertEqual(
            sorted(c.value for c in categories(distinct)),
            sorted([Category.REMOTE.value, Category.STOCK_BROKER.value, Category.ROUTING.value]),
        )
        self.assertTrue(all(h.weight == 1.6 for h in same.hits + distinct.hits))
        self.assertLess(same.score, distinct.score)

    def test_card_and_cvv_example(self):
        result = analyze(CARD_AND_CVV, Lang.EN)
        self.assertGreaterEqual(result.score, 90)
        self.assertIn("Asked for your full card number", result.reasons)
        self.assertIn("Asked for your CVV/security code", result.reasons)
        card = [h for h in result.hits if h.category is Category.CARD_NUMBER]
        self.assertEqual(len(card), 1)
        self.assertEqual(card[0].phrase, "4111 1111 1111 1111")


class TestDetectors(unittest.TestCase):

    def test_luhn(self):
        self.assertTrue(luhn_valid("4111111111111111"))
        self.assertTrue(luhn_valid("4111 1111 1111 1111"))
        self.assertFalse(luhn_valid("4111111111111112"))
        self.assertFalse(luhn_valid("41111111111"))  # too short
        self.assertFalse(luhn_valid("4" * 20))  # too long

    def test_failed_checksum_is_never_a_card(self):
        for number in ("4111 1111 1111 1112", "1234 5678 9012 3456", "0000 0000 0000 0001"):
            result = analyze(f"my card number is {number}", Lang.EN)
            self.assertNotIn(Category.CARD_NUMBER, categories(result))

    def test_card_needs_context(self):
        result = analyze("the reference is 4111 1111 1111 1111", Lang.EN)
        self.assertNotIn(Category.CARD_NUMBER, categories(result))

    def test_overlapping_card_rules_count_once(self):
        result = analyze("numero de tarjeta visa 4111 1111 1111 1111", Lang.ES)
        card = [h for h in result.hits if h.category is Category.CARD_NUMBER]
        self.assertEqual(len(card), 1)

    def test_context_must_be_close_to_value(self):
        near = analyze("tell me the otp please 482913", Lang.EN)
        far = analyze("tell me the otp " + "and then we can talk about it later ok " * 2 + "482913", Lang.EN)
        self.assertEqual(sorted(h.weight for h in near.hits if h.category is Category.OTP), [2.0, 3.0])
        self.assertEqual([h.weight for h in far.hits if h.category is Category.OTP], [2.0])

    def test_contextual_hit_reports_value_and_full_span(self):
        result = analyze("what is the cvv 987", Lang.EN)
        hit = result.hits[0]
        self.assertEqual(hit.phrase, "987")
        self.assertEqual(hit.index, "what is the cvv 987".index("cvv"))
        self.assertEqual(hit.snippet, "what is the cvv 987")

    def test_expiry_token(self):
        result = analyze("and the expiry date 09/27 please", Lang.EN)
        self.assertIn(Category.CARD_EXPIRY, categories(result))
        self.assertNotIn(Category.CARD_EXPIRY, categories(analyze("expiry date 13/27", Lang.EN)))

    def test_routing_value_needs_a_digit(self):
        with_code = analyze("the ifsc is hdfc0001234", Lang.EN)
        wordy = analyze("the ifsc please", Lang.EN)
        self.assertEqual(len([h for h in with_code.hits if h.category is Category.ROUTING]), 2)
        self.assertEqual(len([h for h in wordy.hits if h.category is Category.ROUTING]), 1)

    def test_hit_count_matches_rescan(self):
        text = "Buy a gift card, then bitcoin. More bitcoin and another giftcard via Western Union."
        result = analyze(text, Lang.EN)
        expected = len(re.findall(r"gift\s*card|bitcoin|western union", normalize(text)))
        got = len([h for h in result.hits if h.category is Category.PAYMENT_ALT])
        self.assertEqual(got, expected)
        self.assertEqual(got, 5)

    def test_snippets_are_short(self):
        text = "x" * 200 + " the cvv 123 " + "y" * 200
        hit = analyze(text, Lang.EN).hits[0]
        self.assertLessEqual(len(hit.snippet), 100)
        self.assertIn("cvv 123", hit.snippet)

    def test_evidence_collapses_whitespace(self):
        result = analyze("the   cvv\t\t123", Lang.EN)
        evidence = result.evidence()
        self.assertEqual(evidence[0]["category"], "card_cvv")
        self.assertNotIn("  ", evidence[0]["snippet"])


class TestReasons(unittest.TestCase):

    def test_reasons_follow_priority_and_cap(self):
        text = (
            "urgent, police here, keep this secret, install anydesk, we will arrest you, "
            "buy a gift card, your otp 123456, card number 4111 1111 1111 1111, cvv 123, "
            "account number 12345678"
        )
        result = analyze(text, Lang.EN)
        self.assertEqual(len(result.reasons), 5)
        self.assertEqual(len(set(result.reasons)), 5)
        self.assertEqual(result.reasons[0], "Requested your one-time passcode (OTP)")
        self.assertEqual(result.reasons[1], "Asked for your full card number")
        self.assertEqual(result.reasons[2], "Asked for your CVV/security code")
        self.assertNotIn("Used urgency to force quick action", result.reasons)

    def test_priority_covers_every_category(self):
        self.assertEqual(set(REASON_PRIORITY), set(Category))


class TestLanguages(unittest.TestCase):

    def test_diacritics_match_identically(self):
        accented = analyze("Dígame el código de verificación 123456", Lang.ES)
        plain = analyze("Digame el codigo de verificacion 123456", Lang.ES)
        self.assertGreater(accented.score, 0)
        self.assertEqual(accented.score, plain.score)
        self.assertEqual(categories(accented), categories(plain))

    def test_localized_reason(self):
        result = analyze("necesito el código de seguridad 321", Lang.ES)
        self.assertIn("Pidieron el CVV/código de seguridad", result.reasons)

    def test_non_english_sets_fall_back_to_english(self):
        result = analyze("buy a steam card right now", Lang.FR)
        self.assertIn(Category.PAYMENT_ALT, categories(result))
        self.assertIn(Category.URGENCY, categories(result))
        self.assertEqual(rules_for(Lang.FR)[-len(rules_for(Lang.EN)):], rules_for(Lang.EN))
        self.assertEqual(rules_for(Lang.DE)[-len(rules_for(Lang.EN)):], rules_for(Lang.EN))

    def test_unsupported_language_uses_english(self):
        self.assertIs(rules_for("hi"), rules_for(Lang.EN))
        self.assertEqual(analyze(CARD_AND_CVV, "pt-BR"), analyze(CARD_AND_CVV, Lang.EN))

    def test_german_umlauts(self):
        result = analyze("Bitte per Überweisung zahlen", Lang.DE)
        self.assertIn(Category.PAYMENT_ALT, categories(result))

    def test_german_card_and_cvv(self):
        result = analyze("Ihre Kartennummer 4111 1111 1111 1111 und die Prüfnummer 123 bitte", Lang.DE)
        card = [h for h in result.hits if h.category is Category.CARD_NUMBER]
        self.assertEqual(len(card), 1)
        self.assertIn(Category.CARD_CVV, categories(result))
        self.assertIn("Vollständige Kartennummer verlangt", result.reasons)
        self.assertIn("CVV/Prüfnummer verlangt", result.reasons)


if __name__ == "__main__":
    unittest.main()
