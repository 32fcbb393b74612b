from conftest import RecordingSink
from deckbridge.config import FeedbackClass, FeedbackThrottle
from deckbridge.feedback import FeedbackStateCache, StateMessage


def make_cache(clock, devices=("midi-a",)):
    emitted = RecordingSink()
    cache = FeedbackStateCache(clock=clock, emitter=emitted)
    for device_id in devices:
        cache.register_device(device_id)
    return cache, emitted


def by_control(updates):
    return {update.control_id: update.state for update in updates}


class TestThrottle:
    def test_first_emission_always_passes(self, clock):
        cache = FeedbackStateCache(clock=clock)
        assert cache.emit_feedback(FeedbackClass.LED, ("dev", "play_a"))

    def test_interval_per_class(self, clock):
        cache = FeedbackStateCache(clock=clock, throttle=FeedbackThrottle(led=20, vu_meter=16, display=100))
        key = ("dev", "vu_a")
        assert cache.emit_feedback(FeedbackClass.VU_METER, key)
        clock.advance(10)
        assert not cache.emit_feedback(FeedbackClass.VU_METER, key)
        clock.advance(6)
        assert cache.emit_feedback(FeedbackClass.VU_METER, key)

        assert cache.emit_feedback(FeedbackClass.DISPLAY, ("dev", "track_info"))
        clock.advance(99)
        assert not cache.should_emit(FeedbackClass.DISPLAY, ("dev", "track_info"))

    def test_keys_are_independent(self, clock):
        cache = FeedbackStateCache(clock=clock)
        assert cache.emit_feedback(FeedbackClass.LED, ("dev", "play_a"))
        assert cache.emit_feedback(FeedbackClass.LED, ("dev", "play_b"))
        assert cache.emit_feedback(FeedbackClass.LED, ("other", "play_a"))


class TestApplyDownstreamState:
    def test_partial_update_is_shallow(self, clock):
        cache, _ = make_cache(clock)
        cache.apply_downstream_state({"type": "state", "deck": "A", "playback": {"playing": True, "cued": True}})
        cache.apply_downstream_state({"type": "state", "deck": "A", "playback": {"paused": True}})

        playback = cache.get_deck_state("A").playback
        # The second message replaced the whole playback object
        assert (playback.playing, playback.paused, playback.cued) == (False, True, False)

    def test_untouched_fields_survive(self, clock):
        cache, _ = make_cache(clock)
        cache.apply_downstream_state({"deck": "B", "tempo": {"bpm": 128.0, "pitch": 1.5}})
        cache.apply_downstream_state({"deck": "B", "position": {"currentTime": 12.5, "duration": 200}})

        deck = cache.get_deck_state("b")
        assert deck.tempo.bpm == 128.0
        assert deck.position.current_time == 12.5

    def test_only_present_fields_trigger_feedback(self, clock):
        cache, emitted = make_cache(clock)
        updates = cache.apply_downstream_state({"deck": "A", "sync": {"enabled": True, "locked": True}})
        assert by_control(updates) == {"sync_a": "locked"}
        assert emitted.calls == updates

    def test_playback_feedback(self, clock):
        cache, _ = make_cache(clock)
        updates = cache.apply_downstream_state({"deck": "A", "playback": {"playing": True, "cued": False}})
        assert by_control(updates) == {"play_a": "playing", "cue_a": "stopped"}
        play = next(update for update in updates if update.control_id == "play_a")
        assert (play.action_type, play.command, play.deck, play.device_id) == ("transport", "play", "A", "midi-a")

    def test_vu_meter_level(self, clock):
        cache, _ = make_cache(clock)
        (update,) = cache.apply_downstream_state({"deck": "B", "vuMeter": {"peak": 0.5, "rms": 0.2}})
        assert (update.control_id, update.state, update.feedback_class) == ("vu_b", 64, FeedbackClass.VU_METER)
        assert (update.action_type, update.command) == ("mixer", "vuMeter")

    def test_throttled_updates_still_update_state(self, clock):
        cache, emitted = make_cache(clock)
        cache.apply_downstream_state({"deck": "A", "vuMeter": {"peak": 0.1}})
        clock.advance(5)
        assert cache.apply_downstream_state({"deck": "A", "vuMeter": {"peak": 0.9}}) == []
        assert cache.get_deck_state("A").vu_meter.peak == 0.9
        assert len(emitted.calls) == 1

    def test_fans_out_to_every_device(self, clock):
        cache, _ = make_cache(clock, devices=("midi-a", "hid-b"))
        updates = cache.apply_downstream_state({"deck": "A", "sync": {"enabled": False}})
        assert sorted(update.device_id for update in updates) == ["hid-b", "midi-a"]

    def test_unknown_deck_is_ignored(self, clock, caplog):
        cache, emitted = make_cache(clock)
        assert cache.apply_downstream_state({"deck": "Z", "playback": {"playing": True}}) == []
        assert "Unknown deck" in caplog.text
        assert emitted.calls == []

    def test_malformed_message_is_ignored(self, clock):
        cache, _ = make_cache(clock)
        assert cache.apply_downstream_state({"deck": "A", "playback": "loud"}) == []
        assert cache.get_deck_state("A").playback.playing is False

    def test_library_state_and_track_info(self, clock):
        cache, _ = make_cache(clock)
        updates = cache.apply_downstream_state(
            {"type": "state", "source": "app", "selectedTrack": {"title": "Strings of Life"}, "playlist": [1, 2]}
        )
        (update,) = updates
        assert (update.control_id, update.state, update.feedback_class) == (
            "track_info",
            "Strings of Life",
            FeedbackClass.DISPLAY,
        )
        assert cache.get_library_state().playlist == [1, 2]

    def test_accepts_parsed_messages(self, clock):
        cache, _ = make_cache(clock)
        message = StateMessage.model_validate({"deck": "A", "sync": {"enabled": True}})
        assert by_control(cache.apply_downstream_state(message)) == {"sync_a": "enabled"}

    def test_emitter_errors_are_isolated(self, clock):
        def explode(update):
            raise RuntimeError("device gone")

        cache = FeedbackStateCache(clock=clock, emitter=explode)
        cache.register_device("dev")
        assert len(cache.apply_downstream_state({"deck": "A", "sync": {"enabled": True}})) == 1


class TestSyncDevice:
    def test_replays_full_snapshot(self, clock):
        cache, emitted = make_cache(clock, devices=())
        cache.apply_downstream_state({"deck": "A", "playback": {"playing": True}})
        cache.apply_downstream_state({"selectedTrack": "Track One"})

        updates = cache.sync_device("midi-new")
        states = by_control(updates)
        assert states["play_a"] == "playing"
        assert states["play_b"] == "stopped"
        assert states["sync_a"] == "disabled"
        assert states["vu_b"] == 0
        assert states["track_info"] == "Track One"
        assert {update.device_id for update in updates} == {"midi-new"}
        assert emitted.calls == updates
        assert "midi-new" in cache.devices

    def test_bypasses_throttle(self, clock):
        cache, _ = make_cache(clock)
        cache.apply_downstream_state({"deck": "A", "sync": {"enabled": True}})
        clock.advance(1)
        updates = cache.sync_device("midi-a")
        assert "sync_a" in by_control(updates)

        # The burst counts as the latest emission
        clock.advance(1)
        assert cache.apply_downstream_state({"deck": "A", "sync": {"enabled": False}}) == []

    def test_unregister_forgets_device(self, clock):
        cache, _ = make_cache(clock)
        cache.unregister_device("midi-a")
        assert cache.apply_downstream_state({"deck": "A", "sync": {"enabled": True}}) == []


def test_get_state_uses_wire_keys(clock):
    cache = FeedbackStateCache(clock=clock)
    cache.apply_downstream_state({"deck": "A", "vuMeter": {"peak": 0.3}})
    state = cache.get_state()
    assert state["decks"]["A"]["vuMeter"]["peak"] == 0.3
    assert state["library"]["selectedTrack"] is None
