"""Tests for the oplog entry model."""

from bson import Timestamp

from oplog_sync.mongodb.oplog import LogEntry, OpKind, int_to_ts, ts_to_int


class TestTimestamps:
    """Test timestamp packing."""

    def test_pack(self):
        assert ts_to_int(Timestamp(1, 2)) == (1 << 32) | 2
        assert ts_to_int(None) == 0
        assert ts_to_int(17) == 17

    def test_unpack(self):
        assert int_to_ts((5 << 32) | 9) == Timestamp(5, 9)
        assert int_to_ts(0) == Timestamp(0, 0)

    def test_ordering_follows_time_then_increment(self):
        assert ts_to_int(Timestamp(100, 2)) > ts_to_int(Timestamp(100, 1))
        assert ts_to_int(Timestamp(101, 0)) > ts_to_int(Timestamp(100, 99))


class TestLogEntry:
    """Test LogEntry parsing and update deltas."""

    def test_from_raw(self):
        entry = LogEntry.from_raw({
            "ts": Timestamp(10, 1),
            "op": "u",
            "ns": "shop.users",
            "o": {"$set": {"age": 31}},
            "o2": {"_id": "u1"},
        })
        assert entry.op is OpKind.UPDATE
        assert entry.ns == "shop.users"
        assert entry.ts == (10 << 32) | 1
        assert entry.o2 == {"_id": "u1"}

    def test_unknown_op(self):
        entry = LogEntry.from_raw({"ts": Timestamp(1, 1), "op": "xi", "ns": "shop.users"})
        assert entry.op is OpKind.OTHER
        assert entry.o == {}
        assert entry.o2 is None

    def test_set_unset_delta(self):
        entry = LogEntry(OpKind.UPDATE, "shop.users", 1, {"$set": {"age": 31}, "$unset": {"name": ""}})
        assert entry.update_delta() == ({"age": 31}, {"name": ""})

    def test_replacement_has_no_delta(self):
        entry = LogEntry(OpKind.UPDATE, "shop.users", 1, {"_id": "u1", "name": "Ann"})
        assert entry.update_delta() is None

    def test_v2_diff(self):
        """MongoDB 5+ writes updates as a diff document."""
        entry = LogEntry(OpKind.UPDATE, "shop.users", 1, {
            "$v": 2,
            "diff": {
                "u": {"age": 31},
                "i": {"email": "ann@example.com"},
                "d": {"nickname": False},
                "saddress": {"u": {"city": "Bergen"}, "d": {"zip": False}},
                "stags": {"a": True, "u1": "x"},
            },
        })
        set_fields, unset_fields = entry.update_delta()
        assert set_fields == {
            "age": 31,
            "email": "ann@example.com",
            "address.city": "Bergen",
            "tags": None,
        }
        assert unset_fields == {"nickname": True, "address.zip": True}
