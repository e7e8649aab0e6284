import asyncio
import math
from pathlib import Path

import pytest

from conftest import BlockingExtractor, ScriptedVideoSource, flat_frame
from doorbell.database import HistoryStore
from doorbell.errors import CameraUnavailable, ExtractionTimeout, ModelUnavailable, SessionStateError
from doorbell.face_recognition import FakeExtractor
from doorbell.services.detection_session import DetectionSession, SessionState, run_extraction


def make_session(extractor, video_source, gallery, history, cfg, **kwargs):
    return DetectionSession(extractor, video_source, gallery, history, config=cfg, **kwargs)


async def classify_once(session):
    assert session.tick()
    await session.wait_idle()


async def wait_started(extractor: BlockingExtractor):
    loop = asyncio.get_running_loop()
    assert await loop.run_in_executor(None, extractor.started.wait, 5)


class TestStart:
    def test_model_unavailable_at_start(self, gallery, history, video_source, recognition_config):
        session = make_session(FakeExtractor(ready=False), video_source, gallery, history, recognition_config)

        with pytest.raises(ModelUnavailable):
            asyncio.run(session.start())
        assert session.state is SessionState.ERROR
        assert session.error_kind == "ModelUnavailable"
        assert video_source.streams == []
        assert session.mode() == "unavailable"

    def test_camera_unavailable_then_retry(self, gallery, history, recognition_config):
        source = ScriptedVideoSource(fail=True)
        session = make_session(FakeExtractor(), source, gallery, history, recognition_config)

        async def scenario():
            with pytest.raises(CameraUnavailable):
                await session.start()
            assert session.state is SessionState.ERROR
            assert session.error_kind == "CameraUnavailable"

            source.fail = False
            await session.start()
            assert session.state is SessionState.RUNNING
            assert session.error is None
            await session.stop()

        asyncio.run(scenario())
        assert session.state is SessionState.IDLE
        assert source.open_streams == 0

    def test_start_twice_rejected(self, gallery, history, video_source, recognition_config):
        session = make_session(FakeExtractor(), video_source, gallery, history, recognition_config)

        async def scenario():
            await session.start()
            with pytest.raises(SessionStateError):
                await session.start()
            await session.stop()

        asyncio.run(scenario())
        assert len(video_source.streams) == 1

    def test_stop_while_camera_opening(self, gallery, history, recognition_config):
        source = ScriptedVideoSource(delay=0.05)
        session = make_session(FakeExtractor(), source, gallery, history, recognition_config)

        async def scenario():
            starter = asyncio.create_task(session.start())
            await asyncio.sleep(0.01)
            assert session.state is SessionState.STARTING
            await session.stop()
            await starter
            assert session.state is SessionState.IDLE
            assert not session.tick()

        asyncio.run(scenario())
        assert len(source.streams) == 1
        assert source.open_streams == 0

    def test_start_takes_config_snapshot(self, gallery, history, video_source, recognition_config):
        session = make_session(FakeExtractor(), video_source, gallery, history, recognition_config)
        strict = recognition_config.model_copy(update={"distance_threshold": 0.1})

        async def scenario():
            await session.start(strict)
            await session.stop()

        asyncio.run(scenario())
        assert session.config.distance_threshold == 0.1


class TestClassification:
    def test_known_then_unknown(self, gallery, history, video_source, recognition_config):
        gallery.insert("A", [1.0, 0.0, 0.0])
        extractor = FakeExtractor(script=[[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
        session = make_session(extractor, video_source, gallery, history, recognition_config)

        async def scenario():
            await session.start()
            await classify_once(session)
            await classify_once(session)
            await session.stop()

        asyncio.run(scenario())

        unknown, known = history.list_recent(10)
        assert known.is_known
        assert (known.person_id, known.person_name) == (1, "A")
        assert known.distance == 0.0
        assert known.confidence == 1.0

        assert not unknown.is_known
        assert unknown.person_id is None
        assert unknown.distance == pytest.approx(math.sqrt(2))
        assert unknown.confidence == 0.0
        assert session.stats.events == 2

    def test_empty_gallery_event_has_no_distance(self, gallery, history, video_source, recognition_config):
        session = make_session(FakeExtractor(script=[[1.0, 0.0]]), video_source, gallery, history,
                               recognition_config)

        async def scenario():
            await session.start()
            await classify_once(session)
            await session.stop()

        asyncio.run(scenario())
        event = history.latest()
        assert not event.is_known
        assert event.distance is None
        assert math.isinf(session.last_result.distance)

    def test_enrollment_during_session_is_picked_up(self, gallery, history, video_source, recognition_config):
        extractor = FakeExtractor(script=[[1.0, 0.0], [1.0, 0.0]])
        session = make_session(extractor, video_source, gallery, history, recognition_config)

        async def scenario():
            await session.start()
            await classify_once(session)
            gallery.insert("Late", [1.0, 0.0])
            await classify_once(session)
            await session.stop()

        asyncio.run(scenario())
        newest, oldest = history.list_recent(2)
        assert not oldest.is_known
        assert newest.person_name == "Late"

    def test_no_face_writes_nothing(self, gallery, history, video_source, recognition_config):
        session = make_session(FakeExtractor(script=[None]), video_source, gallery, history, recognition_config)

        async def scenario():
            await session.start()
            await classify_once(session)
            assert session.mode() == "waiting"
            await session.stop()

        asyncio.run(scenario())
        assert len(history) == 0
        assert session.stats.no_face == 1

    def test_bad_frame_does_not_end_session(self, gallery, history, video_source, recognition_config):
        extractor = FakeExtractor(script=[RuntimeError("corrupt frame"), [1.0, 0.0]])
        session = make_session(extractor, video_source, gallery, history, recognition_config)

        async def scenario():
            await session.start()
            await classify_once(session)
            assert session.state is SessionState.RUNNING
            await classify_once(session)
            await session.stop()

        asyncio.run(scenario())
        assert session.stats.failures == 1
        assert len(history) == 1

    def test_model_lost_mid_session(self, gallery, history, video_source, recognition_config):
        extractor = FakeExtractor(script=[ModelUnavailable("model crashed")])
        session = make_session(extractor, video_source, gallery, history, recognition_config)

        async def scenario():
            await session.start()
            await classify_once(session)
            assert session.state is SessionState.ERROR
            assert not session.tick()
            await session.stop()

        asyncio.run(scenario())
        assert session.state is SessionState.ERROR
        assert session.error_kind == "ModelUnavailable"
        assert video_source.open_streams == 0
        assert session.mode() == "unavailable"

    def test_history_write_failure_drops_event(self, gallery, video_source, recognition_config, tmp_path):
        history = HistoryStore(tmp_path / "missing" / "history.json")
        session = make_session(FakeExtractor(script=[[1.0, 0.0]]), video_source, gallery, history,
                               recognition_config)

        async def scenario():
            await session.start()
            await classify_once(session)
            assert session.state is SessionState.RUNNING
            await session.stop()

        asyncio.run(scenario())
        assert len(history) == 0
        assert session.stats.dropped_events == 1
        assert session.last_event is None

    def test_blurred_frames_skipped(self, gallery, history, recognition_config):
        source = ScriptedVideoSource(frame=flat_frame())
        extractor = FakeExtractor(script=[[1.0, 0.0]])
        cfg = recognition_config.model_copy(update={"skip_blurred_frames": True})
        session = make_session(extractor, source, gallery, history, cfg)

        async def scenario():
            await session.start()
            await classify_once(session)
            await session.stop()

        asyncio.run(scenario())
        assert session.stats.blurred == 1
        assert extractor.calls == 0
        assert len(history) == 0

    def test_extraction_timeout_counts_as_failure(self, gallery, history, video_source, recognition_config):
        extractor = BlockingExtractor()
        cfg = recognition_config.model_copy(update={"extraction_timeout_sec": 0.05})
        session = make_session(extractor, video_source, gallery, history, cfg)

        async def scenario():
            await session.start()
            try:
                await classify_once(session)
                assert session.state is SessionState.RUNNING
            finally:
                extractor.release()
            await session.stop()

        asyncio.run(scenario())
        assert session.stats.failures == 1
        assert len(history) == 0


class TestConcurrency:
    def test_at_most_one_classification_in_flight(self, gallery, history, video_source, recognition_config):
        extractor = BlockingExtractor()
        session = make_session(extractor, video_source, gallery, history, recognition_config)

        async def scenario():
            await session.start()
            try:
                assert session.tick()
                await wait_started(extractor)
                assert not session.tick()
                assert not session.tick()
            finally:
                extractor.release()
            await session.wait_idle()
            assert session.tick()
            await session.wait_idle()
            await session.stop()

        asyncio.run(scenario())
        assert extractor.calls == 2
        assert session.stats.skipped_ticks == 2
        assert len(history) == 2

    def test_stop_lets_inflight_frame_finish_once(self, gallery, history, video_source, recognition_config):
        extractor = BlockingExtractor()
        session = make_session(extractor, video_source, gallery, history, recognition_config)

        async def scenario():
            await session.start()
            try:
                assert session.tick()
                await wait_started(extractor)
                stopper = asyncio.create_task(session.stop())
                await asyncio.sleep(0.01)
                assert session.state is SessionState.STOPPING
            finally:
                extractor.release()
            await stopper

        asyncio.run(scenario())
        assert session.state is SessionState.IDLE
        assert len(history) == 1
        assert video_source.open_streams == 0

    def test_timer_records_in_capture_order(self, gallery, history, video_source, recognition_config):
        cfg = recognition_config.model_copy(update={"sample_interval_ms": 20})
        session = make_session(FakeExtractor(), video_source, gallery, history, cfg)

        async def scenario():
            await session.start()
            await asyncio.sleep(0.3)
            await session.stop()
            count = len(history)
            await asyncio.sleep(0.1)
            assert len(history) == count

        asyncio.run(scenario())
        events = history.list_recent(100)
        assert len(events) >= 2
        ids = [e.event_id for e in events]
        assert ids == sorted(ids, reverse=True)
        times = [e.captured_at for e in events]
        assert times == sorted(times, reverse=True)


class TestLifecycle:
    def test_stop_is_idempotent(self, gallery, history, video_source, recognition_config):
        session = make_session(FakeExtractor(), video_source, gallery, history, recognition_config)

        async def scenario():
            await session.stop()
            await session.start()
            await session.stop()
            await session.stop()

        asyncio.run(scenario())
        assert session.state is SessionState.IDLE
        assert video_source.open_streams == 0
        assert not session.tick()

    def test_mode(self, gallery, history, video_source, recognition_config):
        gallery.insert("A", [1.0, 0.0])
        session = make_session(FakeExtractor(script=[[1.0, 0.0]]), video_source, gallery, history,
                               recognition_config)

        async def scenario():
            assert session.mode() == "idle"
            await session.start()
            assert session.mode() == "waiting"
            await classify_once(session)
            assert session.mode() == "detecting"
            await session.stop()
            assert session.mode() == "idle"

        asyncio.run(scenario())

    def test_listeners_get_stored_events(self, gallery, history, video_source, recognition_config):
        received = []

        def broken(event):
            raise RuntimeError("listener bug")

        session = make_session(FakeExtractor(script=[[1.0, 0.0], [1.0, 0.0]]), video_source, gallery, history,
                               recognition_config)
        session.add_listener(broken)
        session.add_listener(received.append)

        async def scenario():
            await session.start()
            await classify_once(session)
            await classify_once(session)
            await session.stop()

        asyncio.run(scenario())
        assert [e.event_id for e in received] == [1, 2]

    def test_status_reports_stats(self, gallery, history, video_source, recognition_config):
        session = make_session(FakeExtractor(script=[[1.0, 0.0]]), video_source, gallery, history,
                               recognition_config)

        async def scenario():
            await session.start()
            await classify_once(session)
            status = session.status()
            await session.stop()
            return status

        status = asyncio.run(scenario())
        assert status["state"] == "running"
        assert status["stats"]["events"] == 1
        assert status["last_event"]["event_id"] == 1
        assert status["extractor"] == "fake"


class TestSnapshots:
    def test_unknown_policy_saves_only_strangers(self, gallery, history, video_source, recognition_config,
                                                 tmp_path):
        gallery.insert("A", [1.0, 0.0, 0.0])
        cfg = recognition_config.model_copy(update={"snapshot_policy": "unknown"})
        extractor = FakeExtractor(script=[[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
        session = make_session(extractor, video_source, gallery, history, cfg, snapshot_dir=tmp_path)

        async def scenario():
            await session.start()
            await classify_once(session)
            await classify_once(session)
            await session.stop()

        asyncio.run(scenario())
        unknown, known = history.list_recent(2)
        assert known.image_path == ""
        assert unknown.image_path
        assert Path(unknown.image_path).exists()
        assert Path(unknown.image_path).parent == tmp_path

    def test_all_policy(self, gallery, history, video_source, recognition_config, tmp_path):
        cfg = recognition_config.model_copy(update={"snapshot_policy": "all"})
        session = make_session(FakeExtractor(script=[[1.0, 0.0]]), video_source, gallery, history, cfg,
                               snapshot_dir=tmp_path)

        async def scenario():
            await session.start()
            await classify_once(session)
            await session.stop()

        asyncio.run(scenario())
        assert Path(history.latest().image_path).exists()


def test_run_extraction_timeout():
    extractor = BlockingExtractor()

    async def scenario():
        try:
            with pytest.raises(ExtractionTimeout):
                await run_extraction(extractor, flat_frame(), None, 0.05)
        finally:
            extractor.release()

    asyncio.run(scenario())
