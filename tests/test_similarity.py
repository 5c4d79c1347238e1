from __future__ import annotations

import random
import unittest

from talent_radar.retry import RetryPolicy
from talent_radar.similarity import (
    common_items,
    date_proximity,
    jaccard,
    levenshtein_distance,
    string_similarity,
)


class SimilarityTests(unittest.TestCase):
    def test_levenshtein_distance(self) -> None:
        self.assertEqual(levenshtein_distance("kitten", "sitting"), 3)
        self.assertEqual(levenshtein_distance("", "abc"), 3)
        self.assertEqual(levenshtein_distance("same", "same"), 0)

    def test_string_similarity_bounds(self) -> None:
        self.assertEqual(string_similarity("Java Developer", "java developer "), 1.0)
        self.assertEqual(string_similarity("", "anything"), 0.0)
        self.assertEqual(string_similarity(None, "anything"), 0.0)
        value = string_similarity("Senior Java Developer", "Java Developer")
        self.assertGreater(value, 0.5)
        self.assertLess(value, 1.0)

    def test_jaccard_is_case_insensitive(self) -> None:
        self.assertEqual(jaccard(["Java", "Spring"], ["java", "spring"]), 1.0)
        self.assertAlmostEqual(jaccard(["java", "spring"], ["java", "docker"]), 1 / 3)
        self.assertEqual(jaccard([], []), 0.0)

    def test_common_items_keeps_left_order(self) -> None:
        self.assertEqual(common_items(["Docker", "Java", "AWS"], ["aws", "java"]), ["Java", "AWS"])

    def test_date_proximity_decays(self) -> None:
        self.assertEqual(date_proximity(None), 0.0)
        self.assertEqual(date_proximity(0.5), 1.0)
        self.assertAlmostEqual(date_proximity(8), 0.5)
        self.assertGreater(date_proximity(3), date_proximity(10))


class RetryPolicyTests(unittest.TestCase):
    def test_should_retry_counts_first_attempt(self) -> None:
        policy = RetryPolicy(max_attempts=3)
        self.assertTrue(policy.should_retry(1))
        self.assertTrue(policy.should_retry(2))
        self.assertFalse(policy.should_retry(3))

    def test_delay_is_exponential_without_jitter(self) -> None:
        policy = RetryPolicy(max_attempts=5, base_delay=2.0, factor=2.0, jitter=0.0)
        self.assertEqual([policy.delay_for(n) for n in (1, 2, 3)], [2.0, 4.0, 8.0])

    def test_delay_is_capped_and_jitter_bounded(self) -> None:
        policy = RetryPolicy(max_attempts=10, base_delay=5.0, max_delay=20.0, jitter=0.1)
        rng = random.Random(7)
        for attempt in range(1, 8):
            delay = policy.delay_for(attempt, rng=rng)
            self.assertLessEqual(delay, 22.0)
            self.assertGreaterEqual(delay, 0.0)

    def test_no_retry(self) -> None:
        policy = RetryPolicy.no_retry()
        self.assertFalse(policy.should_retry(1))
        self.assertEqual(policy.delay_for(1), 0.0)


if __name__ == "__main__":
    unittest.main()
