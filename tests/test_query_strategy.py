from __future__ import annotations

import unittest

from lead_harvester.query_strategy import QueryStrategyGenerator


class QueryStrategyGeneratorTest(unittest.TestCase):
    def test_pool_combines_industries_regions_and_phrases(self) -> None:
        generator = QueryStrategyGenerator(industries=["dental clinic"], regions=["london", "berlin"], seed=1)
        pool = generator.pool

        expected = len(QueryStrategyGenerator.CONTACT_PHRASES) * 2 + len(QueryStrategyGenerator.GENERIC_PHRASES)
        self.assertEqual(len(pool), expected)
        self.assertIn('dental clinic london "contact us"', pool)
        self.assertTrue(all("  " not in sentence for sentence in pool))

    def test_pool_dedupes_whitespace_and_case(self) -> None:
        generator = QueryStrategyGenerator(industries=["Law  Firm", "law firm"], regions=["dublin"], seed=1)
        pool = generator.pool

        self.assertEqual(len(pool), len({sentence.lower() for sentence in pool}))

    def test_generate_is_deterministic_per_seed(self) -> None:
        first = QueryStrategyGenerator(seed=42).generate(10)
        second = QueryStrategyGenerator(seed=42).generate(10)

        self.assertEqual(first, second)
        self.assertEqual(len(first), 10)

    def test_generate_without_limit_returns_whole_pool(self) -> None:
        generator = QueryStrategyGenerator(seed=3)

        self.assertEqual(sorted(generator.generate()), sorted(generator.pool))

    def test_batched(self) -> None:
        generator = QueryStrategyGenerator(seed=5)
        batches = list(generator.batched(4, limit=10))

        self.assertEqual([len(batch) for batch in batches], [4, 4, 2])

    def test_invalid_arguments(self) -> None:
        generator = QueryStrategyGenerator(seed=5)
        with self.assertRaises(ValueError):
            generator.generate(0)
        with self.assertRaises(ValueError):
            next(iter(generator.batched(0)))


if __name__ == "__main__":
    unittest.main()
