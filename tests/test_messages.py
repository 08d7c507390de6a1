from datetime import datetime, timezone

import pytest

from aprstation.messages import MessageLog
from aprstation.records import Message
from aprstation.store import Store


def at(ts):
    return datetime.fromtimestamp(ts, tz=timezone.utc)


@pytest.fixture
def log(tmp_path):
    store = Store(tmp_path / "t.sqlite")
    yield MessageLog(store)
    store.close()


def test_message_callsign_case_folding(log):
    log.log(Message(time=at(1), direction="in", source="wb2osz-5", dest="KG7OKR-10", body="hi"))
    log.log(Message(time=at(2), direction="out", source="KG7OKR-10", dest="WB2OSZ-5", body="yo"))

    convs = log.conversations("kg7okr-10")
    assert len(convs) == 1
    assert convs[0].peer == "WB2OSZ-5"
    assert convs[0].count == 2
    assert convs[0].last_body == "yo"
    assert convs[0].last_dir == "out"

    msgs = log.with_peer("KG7OKR-10", "wb2osz-5", 100)
    assert len(msgs) == 2


def test_mark_ack_case_insensitive(log):
    mid = log.log(
        Message(time=at(1), direction="out", source="KG7OKR-10", dest="WB2OSZ-5",
                body="ping", msg_id="7", state="pending")
    )
    assert log.mark_ack("kg7okr-10", "wb2osz-5", "7") == mid
    got = log.get(mid)
    assert got.acked is True
    assert got.state == "acked"


def test_mark_ack_without_match_returns_zero(log):
    assert log.mark_ack("N0CALL", "W1AW", "1") == 0


def test_mark_ack_only_once(log):
    log.log(Message(time=at(1), direction="out", source="A", dest="B", body="x",
                    msg_id="1", state="pending"))
    assert log.mark_ack("A", "B", "1") != 0
    assert log.mark_ack("A", "B", "1") == 0


def test_mark_rej_sets_rejected(log):
    mid = log.log(Message(time=at(1), direction="out", source="A", dest="B", body="x",
                          msg_id="ab", state="pending"))
    assert log.mark_rej("a", "b", "AB") == mid
    got = log.get(mid)
    assert got.state == "rejected"
    assert got.acked is True


def test_log_defaults_state_to_acked_and_round_trips(log):
    mid = log.log(Message(time=at(100), direction="in", source="n0call", dest="w1aw",
                          body="hello", msg_id="3", via_rf=True, raw="N0CALL>APRS::W1AW"))
    got = log.get(mid)
    assert got.id == mid
    assert got.state == "acked"
    assert got.source == "N0CALL"
    assert got.dest == "W1AW"
    assert got.time == at(100)
    assert got.via_rf is True
    assert got.via_is is False
    assert got.raw == "N0CALL>APRS::W1AW"
    assert got.msg_id == "3"


def test_get_missing_raises(log):
    with pytest.raises(KeyError):
        log.get(999)


def test_set_state_tracks_acked_flag(log):
    mid = log.log(Message(time=at(1), direction="out", source="A", dest="B", body="x",
                          state="pending"))
    log.set_state(mid, "failed", 3)
    got = log.get(mid)
    assert (got.state, got.attempts, got.acked) == ("failed", 3, False)
    log.set_state(mid, "acked", 4)
    got = log.get(mid)
    assert (got.state, got.attempts, got.acked) == ("acked", 4, True)


def test_merge_via_updates_newest_inbound(log):
    first = log.log(Message(time=at(1), direction="in", source="A", dest="B", body="hi", via_is=True))
    second = log.log(Message(time=at(2), direction="in", source="A", dest="B", body="hi", via_is=True))
    log.merge_via("A", "B", "hi", True, False)
    assert log.get(second).via_rf is True
    assert log.get(second).via_is is True
    assert log.get(first).via_rf is False


def test_merge_via_no_flags_is_noop(log):
    mid = log.log(Message(time=at(1), direction="in", source="A", dest="B", body="hi"))
    log.merge_via("A", "B", "hi", False, False)
    got = log.get(mid)
    assert (got.via_rf, got.via_is) == (False, False)


def test_search_is_case_insensitive_newest_first(log):
    log.log(Message(time=at(1), direction="in", source="A", dest="B", body="Net at 146.52"))
    log.log(Message(time=at(5), direction="in", source="C", dest="D", body="net tonight"))
    log.log(Message(time=at(3), direction="in", source="E", dest="F", body="weather"))
    found = log.search("  NET ")
    assert [m.source for m in found] == ["C", "A"]


def test_search_blank_query_returns_nothing(log):
    log.log(Message(time=at(1), direction="in", source="A", dest="B", body="x"))
    assert log.search("   ") == []


def test_with_peer_is_oldest_first_and_limited(log):
    for i in range(5):
        log.log(Message(time=at(i), direction="in", source="PEER", dest="ME", body=f"m{i}"))
    log.log(Message(time=at(9), direction="in", source="OTHER", dest="ME", body="nope"))
    msgs = log.with_peer("me", "peer", 3)
    assert [m.body for m in msgs] == ["m2", "m3", "m4"]


def test_with_peer_empty_arguments(log):
    assert log.with_peer("", "PEER", 10) == []


def test_conversations_excludes_other_traffic(log):
    log.log(Message(time=at(1), direction="in", source="X", dest="Y", body="not mine"))
    assert log.conversations("ME") == []
    assert log.conversations("") == []


def test_latest_bulletins_keeps_newest_per_pair(log):
    log.log(Message(time=at(10), direction="in", source="W1AW", dest="BLN1", body="old"))
    log.log(Message(time=at(20), direction="in", source="W1AW", dest="BLN1", body="new"))
    log.log(Message(time=at(15), direction="in", source="NWS", dest="NWS_WARN", body="storm"))
    log.log(Message(time=at(30), direction="in", source="A", dest="NWSX", body="no"))
    log.log(Message(time=at(30), direction="in", source="A", dest="B", body="plain"))
    bulletins = log.latest_bulletins(at(0))
    assert [(b.source, b.dest, b.body) for b in bulletins] == [
        ("W1AW", "BLN1", "new"),
        ("NWS", "NWS_WARN", "storm"),
    ]
    assert bulletins[0].time == at(20)


def test_latest_bulletins_respects_since(log):
    log.log(Message(time=at(10), direction="in", source="W1AW", dest="BLN1", body="old"))
    assert log.latest_bulletins(at(11)) == []