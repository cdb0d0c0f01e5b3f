import pytest

from services.tutor.context_window import (
    EARLIER_SUMMARY_PREFIX,
    ConversationMessage,
    build_prompt,
    build_transcript,
)


def _dialog(n: int):
    return [
        ConversationMessage(role="user" if i % 2 == 0 else "assistant", content=f"m{i}")
        for i in range(n)
    ]


class _Recorder:
    def __init__(self, reply: str = "they covered entropy"):
        self.calls = []
        self.reply = reply

    def __call__(self, transcript: str) -> str:
        self.calls.append(transcript)
        return self.reply


def test_empty_history_gives_system_and_user_only() -> None:
    summarize = _Recorder()
    out = build_prompt("SYS", [], "hello", summarize=summarize)
    assert out == [{"role": "system", "content": "SYS"}, {"role": "user", "content": "hello"}]
    assert summarize.calls == []


@pytest.mark.parametrize("n", [1, 7, 15])
def test_short_history_is_kept_verbatim_without_summary(n: int) -> None:
    summarize = _Recorder()
    history = _dialog(n)
    out = build_prompt("SYS", history, "next", summarize=summarize)
    assert summarize.calls == []
    assert [m["content"] for m in out[1:-1]] == [m.content for m in history]
    assert out[-1] == {"role": "user", "content": "next"}


def test_system_messages_in_history_are_dropped() -> None:
    summarize = _Recorder()
    history = [ConversationMessage(role="system", content="stale")] + _dialog(3)
    out = build_prompt("SYS", history, "q", summarize=summarize)
    assert [m["content"] for m in out] == ["SYS", "m0", "m1", "m2", "q"]


def test_long_history_makes_one_summary_call_and_keeps_last_fifteen() -> None:
    summarize = _Recorder()
    history = _dialog(20)
    out = build_prompt("SYS", history, "q", summarize=summarize)

    assert len(summarize.calls) == 1
    assert out[0] == {"role": "system", "content": "SYS"}
    assert out[1] == {"role": "system", "content": EARLIER_SUMMARY_PREFIX + "they covered entropy"}
    assert [m["content"] for m in out[2:-1]] == [f"m{i}" for i in range(5, 20)]
    transcript = summarize.calls[0]
    assert transcript.startswith("Student: m0")
    assert "Tutor: m1" in transcript
    assert "m5" not in transcript


def test_summary_window_ignores_interleaved_system_messages() -> None:
    summarize = _Recorder()
    history = _dialog(16)
    history.insert(3, ConversationMessage(role="system", content="noise"))
    out = build_prompt("SYS", history, None, summarize=summarize)
    assert len(summarize.calls) == 1
    assert [m["content"] for m in out[2:]] == [f"m{i}" for i in range(1, 16)]


def test_summary_failure_propagates() -> None:
    def _boom(_: str) -> str:
        raise RuntimeError("provider down")

    with pytest.raises(RuntimeError):
        build_prompt("SYS", _dialog(16), "q", summarize=_boom)


def test_transcript_is_capped() -> None:
    long = [ConversationMessage(role="user", content="x" * 5000) for _ in range(3)]
    assert len(build_transcript(long)) == 8000
