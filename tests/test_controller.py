import os
import tempfile
import unittest
from pathlib import Path


class _HomeTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.addCleanup(self._td.cleanup)
        old_home = os.environ.get("TOPICBRIDGE_HOME")
        os.environ["TOPICBRIDGE_HOME"] = self._td.name
        self.addCleanup(self._restore_home, old_home)

    def _restore_home(self, old_home) -> None:
        if old_home is None:
            os.environ.pop("TOPICBRIDGE_HOME", None)
        else:
            os.environ["TOPICBRIDGE_HOME"] = old_home

    def _controller(self, settings=None, **kwargs):
        from bridge_fakes import FakeDestination, FakeSource, FakeTranscoder, MemoryStore, make_settings
        from topicbridge.bridge.controller import BridgeController

        self.source = FakeSource()
        self.dest = FakeDestination()
        self.backend = MemoryStore()
        opts = {"backend": self.backend, "transcoder": FakeTranscoder(), "use_chat_lock": False}
        opts.update(kwargs)
        c = BridgeController(settings or make_settings(), self.source, self.dest, **opts)
        self.addCleanup(c.stop, 5.0)
        return c


class TestBridgeController(_HomeTestCase):
    def test_missing_chat_id_leaves_bridge_uninitialized(self) -> None:
        from bridge_fakes import make_settings
        from topicbridge.bridge.controller import BridgeState

        c = self._controller(make_settings(destination={"token": "123:abc"}))
        self.assertFalse(c.start())
        self.assertIs(c.state, BridgeState.UNINITIALIZED)
        self.assertFalse(c.enabled)
        self.assertIn("destination.chat_id", c.last_error)
        self.assertEqual(self.dest.connect_calls, 0)

        self.assertFalse(c.start())
        self.assertIs(c.state, BridgeState.UNINITIALIZED)

    def test_login_failure_disables_bridge(self) -> None:
        from topicbridge.bridge.controller import BridgeState
        from topicbridge.errors import AuthExpiredError

        c = self._controller()
        self.source.login_errors = [AuthExpiredError("bad password")]
        self.assertFalse(c.start())
        self.assertIs(c.state, BridgeState.UNINITIALIZED)
        self.assertFalse(c.enabled)

    def test_start_forward_and_stop(self) -> None:
        from bridge_fakes import raw_message, wait_for
        from topicbridge.bridge.controller import BridgeState

        c = self._controller()
        self.assertTrue(c.start())
        self.assertIs(c.state, BridgeState.RUNNING)
        self.assertEqual(self.backend.opened, 1)

        self.source.batches.append([raw_message("m1", "t1", 100, "hi"), raw_message("m1", "t1", 100, "hi")])
        self.assertTrue(wait_for(lambda: len(self.dest.texts) == 1))

        c.stop()
        self.assertIs(c.state, BridgeState.STOPPED)
        self.assertTrue(self.source.disconnected)
        self.assertEqual(self.backend.closed, 1)
        self.assertEqual(len(self.dest.texts), 1)
        self.assertTrue(c.wait_stopped(0))

    def test_persisted_filter_terms_apply(self) -> None:
        from bridge_fakes import raw_message, wait_for

        c = self._controller()
        self.backend.upsert("filter", "promo", {"term": "promo"})
        self.assertTrue(c.start())
        self.source.batches.append([raw_message("m1", "t1", 100, "Promo!"), raw_message("m2", "t1", 101, "ok")])
        self.assertTrue(wait_for(lambda: len(self.dest.texts) == 1))
        self.assertEqual(self.dest.texts[0][2], "ok")

        c.add_blocked_term("Deal")
        self.assertIn("deal", [d["term"] for d in self.backend.find_all("filter")])
        self.assertTrue(c.remove_blocked_term("deal"))

    def test_skip_backlog_ignores_history(self) -> None:
        import time

        from bridge_fakes import make_settings, raw_message, wait_for

        c = self._controller(make_settings(skipBacklog=True))
        self.assertTrue(c.start())
        self.source.batches.append(
            [raw_message("old", "t1", 100, "history"), raw_message("new", "t1", time.time() + 5, "fresh")]
        )
        self.assertTrue(wait_for(lambda: len(self.dest.texts) == 1))
        self.assertEqual(self.dest.texts[0][2], "fresh")

    def test_auth_error_degrades_then_recovers(self) -> None:
        from bridge_fakes import raw_message, wait_for
        from topicbridge.bridge.controller import BridgeState
        from topicbridge.errors import AuthExpiredError

        c = self._controller()
        with self.assertLogs("topicbridge.controller", level="INFO") as logs:
            self.assertTrue(c.start())
            self.source.poll_errors.append(AuthExpiredError("session expired"))
            self.assertTrue(wait_for(lambda: self.source.login_calls >= 2 and c.state is BridgeState.RUNNING))
        joined = "\n".join(logs.output)
        self.assertIn("running -> degraded", joined)
        self.assertIn("degraded -> running", joined)

        self.source.batches.append([raw_message("m1", "t1", 100, "after recovery")])
        self.assertTrue(wait_for(lambda: len(self.dest.texts) == 1))

    def test_recovery_without_credentials_is_fatal(self) -> None:
        from bridge_fakes import wait_for
        from topicbridge.bridge.controller import BridgeState
        from topicbridge.errors import AuthExpiredError, ConfigurationError

        c = self._controller()
        self.source.login_errors = [None, ConfigurationError("no credentials")]
        self.assertTrue(c.start())
        self.source.poll_errors.append(AuthExpiredError("session expired"))
        self.assertTrue(wait_for(lambda: c.state is BridgeState.STOPPED))
        self.assertFalse(c.enabled)
        self.assertIn("no credentials", c.last_error)

    def test_recovery_gives_up_after_max_attempts(self) -> None:
        from bridge_fakes import wait_for
        from topicbridge.bridge.controller import BridgeState
        from topicbridge.errors import AuthExpiredError

        c = self._controller()
        self.dest.connect_errors = [None] + [AuthExpiredError("token revoked")] * 3
        self.assertTrue(c.start())
        self.dest.poll_errors.append(AuthExpiredError("401"))
        self.assertTrue(wait_for(lambda: c.state is BridgeState.STOPPED))
        self.assertEqual(self.dest.connect_calls, 4)
        self.assertFalse(c.enabled)

    def test_transient_poll_errors_do_not_degrade(self) -> None:
        from bridge_fakes import raw_message, wait_for
        from topicbridge.bridge.controller import BridgeState
        from topicbridge.errors import TransientNetworkError

        c = self._controller()
        self.assertTrue(c.start())
        self.source.poll_errors.extend([TransientNetworkError("reset"), TransientNetworkError("reset")])
        self.source.batches.append([raw_message("m1", "t1", 100, "eventually")])
        self.assertTrue(wait_for(lambda: len(self.dest.texts) == 1))
        self.assertIs(c.state, BridgeState.RUNNING)

    def test_stop_waits_for_inflight_creation(self) -> None:
        from bridge_fakes import raw_message, wait_for

        c = self._controller()
        self.dest.create_delay = 0.3
        self.assertTrue(c.start())
        self.source.batches.append([raw_message("m1", "t1", 100, "slow")])
        self.assertTrue(wait_for(lambda: self.dest.create_calls == 1))
        c.stop()
        self.assertEqual(c.topics.inflight_count, 0)
        self.assertIsNotNone(c.store.get_subchannel("t1"))
        self.assertEqual(self.backend.find_all("chat")[0]["threadId"], "t1")

    def test_stop_clears_temp_dir(self) -> None:
        from topicbridge.paths import temp_dir

        c = self._controller()
        self.assertTrue(c.start())
        (temp_dir()).mkdir(parents=True, exist_ok=True)
        (temp_dir() / "leftover.ogg").write_bytes(b"x")
        c.stop()
        self.assertEqual(list(temp_dir().iterdir()), [])

    def test_heartbeat_flushes_and_reports(self) -> None:
        from bridge_fakes import raw_message, wait_for

        c = self._controller()
        self.assertTrue(c.start())
        self.source.batches.append([raw_message("m1", "t1", 100, "a"), raw_message("m2", "t1", 101, "b")])
        self.assertTrue(wait_for(lambda: len(self.dest.texts) == 2))
        snap = c.heartbeat()
        self.assertEqual(snap["state"], "running")
        self.assertEqual(snap["store"]["chats"], 1)
        self.assertEqual(self.backend.find_all("user")[0]["messageCount"], 2)

    def test_second_instance_cannot_own_same_chat(self) -> None:
        from bridge_fakes import FakeDestination, FakeSource, MemoryStore, make_settings
        from topicbridge.bridge.controller import BridgeController

        first = self._controller(use_chat_lock=True)
        self.assertTrue(first.start())
        second = BridgeController(make_settings(), FakeSource(), FakeDestination(), backend=MemoryStore())
        self.assertFalse(second.start())
        self.assertIn("another bridge instance", second.last_error)


class TestSettings(_HomeTestCase):
    def test_defaults(self) -> None:
        from topicbridge.kernel.settings import BridgeSettings

        s = BridgeSettings()
        self.assertTrue(s.welcome_message)
        self.assertTrue(s.profile_pic_sync)
        self.assertEqual(s.max_dedup_window, 1000)
        self.assertEqual(s.poll_interval_seconds, 5.0)
        self.assertEqual(s.storage.backend, "json")
        self.assertEqual(s.media.max_concurrent_conversions, 2)

    def test_camel_case_and_loose_bools(self) -> None:
        from topicbridge.kernel.settings import settings_from_dict

        s = settings_from_dict(
            {
                "welcomeMessage": "false",
                "profilePicSync": "no",
                "pollIntervalMs": 1500,
                "maxDedupWindow": 50,
                "blockedTerms": "promo",
                "destination": {"chatId": -100123, "tokenEnv": "TB_TEST_TOKEN"},
            }
        )
        self.assertFalse(s.welcome_message)
        self.assertFalse(s.profile_pic_sync)
        self.assertEqual(s.poll_interval_seconds, 1.5)
        self.assertEqual(s.blocked_terms, ["promo"])
        self.assertEqual(s.destination.chat_id, "-100123")

    def test_token_from_env(self) -> None:
        from topicbridge.errors import ConfigurationError
        from topicbridge.kernel.settings import settings_from_dict

        s = settings_from_dict({"destination": {"chat_id": "-1", "token_env": "TB_TEST_TOKEN"}})
        os.environ.pop("TB_TEST_TOKEN", None)
        with self.assertRaises(ConfigurationError) as ctx:
            s.require_destination()
        self.assertIn("TB_TEST_TOKEN", str(ctx.exception))

        os.environ["TB_TEST_TOKEN"] = "999:zzz"
        try:
            self.assertEqual(s.destination.resolved_token(), "999:zzz")
            s.require_destination()
        finally:
            os.environ.pop("TB_TEST_TOKEN", None)

    def test_load_yaml_and_mask(self) -> None:
        from topicbridge.kernel.settings import load_settings, save_settings

        p = Path(self._td.name) / "bridge.yaml"
        p.write_text(
            "destination:\n  token: '1:secret'\n  chat_id: '-100'\nstorage:\n  backend: mongo\n  mongo_uri: mongodb://x\n",
            encoding="utf-8",
        )
        s = load_settings(p)
        self.assertEqual(s.storage.backend, "mongo")
        masked = s.masked()
        self.assertEqual(masked["destination"]["token"], "***")
        self.assertEqual(masked["storage"]["mongo_uri"], "***")

        save_settings(s, p)
        self.assertEqual(load_settings(p).destination.resolved_token(), "1:secret")

    def test_invalid_files_raise_configuration_error(self) -> None:
        from topicbridge.errors import ConfigurationError
        from topicbridge.kernel.settings import load_settings, settings_from_dict

        p = Path(self._td.name) / "bad.yaml"
        p.write_text("destination: [unclosed\n", encoding="utf-8")
        with self.assertRaises(ConfigurationError):
            load_settings(p)
        p.write_text("- a list\n", encoding="utf-8")
        with self.assertRaises(ConfigurationError):
            load_settings(p)
        with self.assertRaises(ConfigurationError):
            settings_from_dict({"maxDedupWindow": 0})

    def test_missing_file_yields_defaults(self) -> None:
        from topicbridge.kernel.settings import load_settings

        s = load_settings(Path(self._td.name) / "absent.yaml")
        self.assertEqual(s.destination.chat_id, "")


if __name__ == "__main__":
    unittest.main()
