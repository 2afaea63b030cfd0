from chat_core.streaming import MessageAccumulator, extract_delta


def _frame(text):
    return {"choices": [{"delta": {"content": text}}]}


def test_extract_delta_tolerates_missing_or_odd_shapes():
    assert extract_delta(_frame("x")) == "x"
    assert extract_delta({"choices": [{"delta": {}}]}) is None
    assert extract_delta({"choices": [{"delta": {"content": ""}}]}) is None
    assert extract_delta({"choices": []}) is None
    assert extract_delta({"choices": "nope"}) is None
    assert extract_delta({"choices": [{"delta": {"content": 3}}]}) is None
    assert extract_delta([1, 2]) is None
    assert extract_delta(None) is None


def test_accumulator_reports_first_token_once_and_cumulative_content():
    acc = MessageAccumulator("m1")
    assert acc.consume({"choices": [{"delta": {"role": "assistant"}}]}) is None

    first = acc.consume(_frame("Hi"))
    assert first.first is True
    assert first.delta == "Hi"
    assert first.content == "Hi"
    assert first.message_id == "m1"

    second = acc.consume(_frame(" there"))
    assert second.first is False
    assert second.content == "Hi there"
    assert acc.content == "Hi there"
    assert acc.received == 2


def test_accumulator_preserves_frame_order():
    acc = MessageAccumulator("m1")
    for piece in ["a", "b", "c", "d"]:
        acc.consume(_frame(piece))
    assert acc.content == "abcd"
