from salon_tokens.watch import EventDeduper, format_event


def _msg(version, status="waiting", mtype="token_status_changed", previous="waiting"):
    return {
        "type": mtype,
        "queue": "male",
        "previous_status": previous,
        "token": {"id": "t1", "label": "M1", "service": "Haircut", "status": status, "version": version},
    }


def test_deduper_drops_repeats_and_stale_versions():
    d = EventDeduper()
    assert d.accept(_msg(1))
    assert not d.accept(_msg(1))
    assert d.accept(_msg(3, status="served"))
    assert not d.accept(_msg(2, status="serving"))
    assert not d.accept({"type": "token_issued"})


def test_format_event():
    assert format_event(_msg(1, mtype="token_issued", previous=None)) == "M1 issued (Haircut)"
    assert format_event(_msg(2, status="serving")) == "M1 waiting -> serving"
    assert format_event({"type": "unknown", "token": {}}) is None
