import unittest


class _Harness:
    def __init__(self, blocked=()):
        from bridge_fakes import CHAT_ID, FakeDestination, FakeSource, MemoryStore
        from topicbridge.bridge.forward import ForwardPipeline
        from topicbridge.bridge.listeners import Backoff, SourceListener
        from topicbridge.kernel.dedup import DedupWindow
        from topicbridge.kernel.filters import ContentFilter
        from topicbridge.kernel.mapping_store import MappingStore
        from topicbridge.kernel.topics import TopicMapper

        self.source = FakeSource()
        self.dest = FakeDestination()
        self.store = MappingStore(MemoryStore())
        self.store.load()
        self.topics = TopicMapper(
            self.store, self.dest, CHAT_ID, welcome_message=False, profile_pic_sync=False, verify_ttl_seconds=0
        )
        self.pipeline = ForwardPipeline(
            self.store, self.topics, self.dest, CHAT_ID, ContentFilter(blocked), source=self.source
        )
        self.listener = SourceListener(
            self.source,
            DedupWindow(1000),
            self.pipeline,
            interval=0,
            backoff=Backoff(0.01, 0.01),
            on_auth_error=lambda name, exc: None,
        )

    def deliver(self, *raws) -> int:
        self.source.batches.append(list(raws))
        return self.listener.run_once()

    def texts(self):
        return [t for _c, _s, t, _m in self.dest.texts]


class TestForwardPipeline(unittest.TestCase):
    def test_duplicate_delivery_is_forwarded_once(self) -> None:
        from bridge_fakes import raw_message

        h = _Harness()
        self.assertEqual(h.deliver(raw_message("m1", "t1", 100, "hi")), 1)
        self.assertEqual(h.deliver(raw_message("m1", "t1", 100, "hi")), 0)
        self.assertEqual(h.texts(), ["hi"])

    def test_batch_is_processed_oldest_first(self) -> None:
        from bridge_fakes import raw_message

        h = _Harness()
        n = h.deliver(raw_message("m2", "t1", 200, "second"), raw_message("m1", "t1", 100, "first"))
        self.assertEqual(n, 2)
        self.assertEqual(h.texts(), ["first", "second"])

    def test_millisecond_timestamps_are_comparable(self) -> None:
        from bridge_fakes import raw_message

        h = _Harness()
        h.deliver(raw_message("m1", "t1", 1_700_000_000_000, "ms"))
        h.deliver(raw_message("m2", "t1", 1_700_000_001, "s"))
        self.assertEqual(h.texts(), ["ms", "s"])

    def test_text_is_sent_unmodified(self) -> None:
        from bridge_fakes import raw_message

        h = _Harness()
        body = "  *bold*_under_ `x` é 🙂\n\nline  "
        h.deliver(raw_message("m1", "t1", 100, body))
        self.assertEqual(h.texts(), [body])
        self.assertIsNone(h.dest.texts[0][3])

    def test_participant_profile_is_counted(self) -> None:
        from bridge_fakes import raw_message

        h = _Harness()
        h.deliver(raw_message("m1", "t1", 100, sender_id="u9", sender_username="zed"))
        h.deliver(raw_message("m2", "t1", 101, sender_id="u9", sender_username="zed"))
        p = h.store.get_participant("u9")
        self.assertEqual(p.message_count, 2)
        self.assertEqual(p.username, "zed")
        self.assertEqual(list(h.dest.topics.values()), ["@zed"])

    def test_blocked_message_is_dropped_silently(self) -> None:
        from bridge_fakes import raw_message

        h = _Harness(blocked=["promo"])
        self.assertEqual(h.deliver(raw_message("m1", "t1", 100, "  PROMO: free stuff")), 0)
        self.assertEqual(h.texts(), [])
        self.assertEqual(h.store.get_participant("u1").message_count, 1)

    def test_deleted_subchannel_is_recreated_on_next_message(self) -> None:
        from bridge_fakes import raw_message

        h = _Harness()
        h.deliver(raw_message("m1", "t1", 100, "one"))
        old = h.store.get_subchannel("t1")
        h.dest.delete_topic(old)

        self.assertEqual(h.deliver(raw_message("m2", "t1", 101, "two")), 0)
        self.assertIsNone(h.store.get_subchannel("t1"))
        self.assertIsNone(h.store.find_thread(old))
        self.assertEqual(h.texts(), ["one"])

        self.assertEqual(h.deliver(raw_message("m3", "t1", 102, "three")), 1)
        new = h.store.get_subchannel("t1")
        self.assertIsNotNone(new)
        self.assertNotEqual(new, old)
        self.assertEqual(h.dest.texts[-1][1:3], (new, "three"))

    def test_thread_not_found_on_send_drops_mapping(self) -> None:
        from bridge_fakes import raw_message

        h = _Harness()
        h.deliver(raw_message("m1", "t1", 100, "one"))
        old = h.store.get_subchannel("t1")
        # The existence check still says yes; the send itself reports the topic gone.
        h.dest.deleted.add(old)
        h.dest.subchannel_exists = lambda chat_id, sid: True

        self.assertEqual(h.deliver(raw_message("m2", "t1", 101, "two")), 0)
        self.assertIsNone(h.store.get_subchannel("t1"))

    def test_topic_creation_failure_drops_message(self) -> None:
        from bridge_fakes import raw_message
        from topicbridge.errors import BridgeError

        h = _Harness()
        h.dest.create_errors = [BridgeError("not enough rights to create a topic")]
        self.assertEqual(h.deliver(raw_message("m1", "t1", 100, "lost")), 0)
        self.assertEqual(h.deliver(raw_message("m2", "t1", 101, "kept")), 1)
        self.assertEqual(h.texts(), ["kept"])

    def test_transient_topic_creation_failure_is_retried(self) -> None:
        from bridge_fakes import raw_message
        from topicbridge.errors import TransientNetworkError

        h = _Harness()
        h.dest.create_errors = [TransientNetworkError("timeout")]
        with self.assertRaises(TransientNetworkError):
            h.deliver(raw_message("m1", "t1", 100, "first"))
        self.assertEqual(h.listener.held_count, 1)
        self.assertEqual(h.deliver(), 1)
        self.assertEqual(h.texts(), ["first"])
        self.assertEqual(h.dest.create_calls, 2)

    def test_rate_limited_send_is_not_lost(self) -> None:
        from bridge_fakes import raw_message
        from topicbridge.errors import TransientNetworkError

        h = _Harness()
        real_send = h.dest.send_text
        failures = [TransientNetworkError("sendMessage: Too Many Requests", retry_after=1)]

        def send_text(*args, **kwargs):
            if failures:
                raise failures.pop(0)
            return real_send(*args, **kwargs)

        h.dest.send_text = send_text
        with self.assertRaises(TransientNetworkError) as ctx:
            h.deliver(raw_message("m1", "t1", 100, "hello"), raw_message("m2", "t1", 101, "again"))
        self.assertEqual(ctx.exception.retry_after, 1)
        self.assertFalse(h.listener.dedup.seen("m1"))
        self.assertEqual(h.listener.held_count, 2)

        # The source offers m1 again as well; it is still delivered once.
        self.assertEqual(h.deliver(raw_message("m1", "t1", 100, "hello")), 2)
        self.assertEqual(h.deliver(), 0)
        self.assertEqual(h.texts(), ["hello", "again"])
        self.assertEqual(h.store.get_participant("u1").message_count, 2)

    def test_listener_backs_off_and_retries_deferred_message(self) -> None:
        from bridge_fakes import raw_message, wait_for
        from topicbridge.errors import TransientNetworkError

        h = _Harness()
        real_send = h.dest.send_text
        failures = [TransientNetworkError("sendMessage: Bad Gateway")]

        def send_text(*args, **kwargs):
            if failures:
                raise failures.pop(0)
            return real_send(*args, **kwargs)

        h.dest.send_text = send_text
        h.source.batches.append([raw_message("m1", "t1", 100, "hello")])
        h.listener.start()
        self.addCleanup(h.listener.stop, 5)
        self.assertTrue(wait_for(lambda: h.texts() == ["hello"]))

    def test_inline_media_is_uploaded_with_caption(self) -> None:
        from bridge_fakes import raw_message
        from topicbridge.contracts.v1 import MessageType

        h = _Harness()
        h.deliver(raw_message("m1", "t1", 100, "", item_type="photo", caption="sunset", media_bytes=b"\xff\xd8jpeg"))
        self.assertEqual(len(h.dest.media), 1)
        payload = h.dest.media[0][2]
        self.assertEqual(payload.kind, MessageType.PHOTO)
        self.assertEqual(payload.data, b"\xff\xd8jpeg")
        self.assertEqual(payload.caption, "sunset")
        self.assertEqual(payload.filename, "photo.jpg")

    def test_media_from_source_client(self) -> None:
        from bridge_fakes import raw_message

        h = _Harness()
        h.source.fetched["m1"] = b"OggS..."
        h.deliver(raw_message("m1", "t1", 100, "", item_type="voice_media"))
        self.assertEqual(h.dest.media[0][2].data, b"OggS...")

    def test_refused_media_falls_back_to_text(self) -> None:
        from bridge_fakes import raw_message

        h = _Harness()
        h.dest.refuse_media = True
        h.deliver(raw_message("m1", "t1", 100, "", item_type="video", caption="clip", media_bytes=b"mp4"))
        self.assertEqual(h.texts(), ["[video] clip"])

    def test_missing_media_and_unknown_types_fall_back_to_text(self) -> None:
        from bridge_fakes import raw_message

        h = _Harness()
        h.deliver(raw_message("m1", "t1", 100, "", item_type="document", filename="cv.pdf"))
        h.deliver(raw_message("m2", "t1", 101, "", item_type="live_viewer_invite"))
        self.assertEqual(h.texts(), ["[document] cv.pdf", "[other]"])

    def test_pipeline_never_raises(self) -> None:
        from bridge_fakes import raw_message
        from topicbridge.ports.source import normalize_message

        h = _Harness()

        def broken(*args, **kwargs):
            raise RuntimeError("destination exploded")

        h.dest.send_text = broken
        self.assertFalse(h.pipeline.forward(normalize_message(raw_message("m1", "t1", 100, "x"))))


class TestNormalize(unittest.TestCase):
    def test_item_types_and_fallbacks(self) -> None:
        from bridge_fakes import raw_message
        from topicbridge.contracts.v1 import MessageType
        from topicbridge.ports.source import message_type_for, normalize_message

        self.assertIs(message_type_for("Voice_Media"), MessageType.VOICE)
        self.assertIs(message_type_for("clip"), MessageType.VIDEO)
        self.assertIs(message_type_for("sticker"), MessageType.OTHER)

        m = normalize_message(raw_message("m1", "t1", 1_700_000_000_000_000, "", sender_username="", item_type="photo", caption="c"))
        self.assertEqual(m.text, "c")
        self.assertEqual(m.sender_username, "user_u1")
        self.assertAlmostEqual(m.timestamp, 1_700_000_000.0)


if __name__ == "__main__":
    unittest.main()
