import unittest


class TestDedupWindow(unittest.TestCase):
    def test_same_id_is_accepted_once(self) -> None:
        from topicbridge.kernel.dedup import DedupWindow

        w = DedupWindow(capacity=10)
        self.assertTrue(w.accept("m1", 100))
        self.assertFalse(w.accept("m1", 100))
        self.assertFalse(w.accept("m1", 200))
        self.assertEqual(len(w), 1)

    def test_timestamp_at_or_below_watermark_is_rejected(self) -> None:
        from topicbridge.kernel.dedup import DedupWindow

        w = DedupWindow(capacity=10, high_watermark=50)
        self.assertFalse(w.accept("old", 50))
        self.assertFalse(w.accept("older", 10))
        self.assertTrue(w.accept("new", 51))
        self.assertEqual(w.high_watermark, 51)
        self.assertFalse(w.accept("late", 51))

    def test_watermark_never_moves_backwards(self) -> None:
        from topicbridge.kernel.dedup import DedupWindow

        w = DedupWindow(capacity=10)
        self.assertTrue(w.accept("a", 300))
        self.assertFalse(w.accept("b", 200))
        self.assertEqual(w.high_watermark, 300)

    def test_eviction_is_fifo_and_bounded(self) -> None:
        from topicbridge.kernel.dedup import DedupWindow

        w = DedupWindow(capacity=3)
        for i in range(1, 6):
            self.assertTrue(w.accept(f"m{i}", i))
            self.assertLessEqual(len(w), 3)
        self.assertEqual(len(w), 3)
        self.assertEqual(w.oldest(), "m3")
        self.assertFalse(w.seen("m1"))
        self.assertFalse(w.seen("m2"))
        self.assertTrue(w.seen("m5"))

    def test_lookup_does_not_refresh_position(self) -> None:
        from topicbridge.kernel.dedup import DedupWindow

        w = DedupWindow(capacity=2)
        w.accept("a", 1)
        w.accept("b", 2)
        self.assertFalse(w.accept("a", 3))
        w.accept("c", 4)
        self.assertFalse(w.seen("a"))
        self.assertTrue(w.seen("b"))

    def test_empty_id_rejected(self) -> None:
        from topicbridge.kernel.dedup import DedupWindow

        w = DedupWindow()
        self.assertFalse(w.accept("", 100))
        self.assertEqual(len(w), 0)

    def test_capacity_must_be_positive(self) -> None:
        from topicbridge.kernel.dedup import DedupWindow

        with self.assertRaises(ValueError):
            DedupWindow(capacity=0)

    def test_is_new_does_not_record(self) -> None:
        from topicbridge.kernel.dedup import DedupWindow

        w = DedupWindow(capacity=10)
        self.assertTrue(w.is_new("m1", 100))
        self.assertTrue(w.is_new("m1", 100))
        self.assertEqual(len(w), 0)
        self.assertEqual(w.high_watermark, 0.0)

        w.commit("m1", 100)
        self.assertFalse(w.is_new("m1", 100))
        self.assertFalse(w.accept("m1", 100))
        self.assertEqual(w.high_watermark, 100)


if __name__ == "__main__":
    unittest.main()
