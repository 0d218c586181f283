import pytest


torch = pytest.importorskip("torch", reason="torch not installed")


from pocketllm.engine.errors import SessionBusyError, SessionClosedError
from pocketllm.engine.sampling import ChatSampler, GreedySampler, StochasticParams
from pocketllm.engine.session import Session, SessionConfig


HI = [("user", "hi")]


def _drain(session: Session, *, check_bound: bool = True) -> list[str]:
    out = []
    while not session.is_done:
        out.append(session.completion_loop())
        if check_bound and not session.is_done:
            assert session.n_cur <= session.generation_end_position
    return out


def test_basic_completion_until_end_of_generation(make_backend):
    backend = make_backend(next_tokens=make_backend.text_tokens("Hello"))
    session = Session(backend)

    session.completion_init(HI, deterministic=True)
    assert not session.is_done
    prompt_len = session.prompt_tokens
    assert session.n_cur == prompt_len

    text = "".join(_drain(session))
    assert text == "Hello"
    assert session.stop_reason == "eog"
    assert session.get_n_decode() == 5
    assert session.n_cur == prompt_len + 5
    # Prompt decode plus one decode per accepted token.
    assert len(backend.decode_calls) == 6
    assert [r.emit_logits for r in backend.decode_calls[0]][-1] is True
    assert not any(r.emit_logits for r in backend.decode_calls[0][:-1])


def test_session_starts_idle(make_backend):
    session = Session(make_backend())
    assert session.is_done
    assert session.completion_loop() == ""


def test_generation_stops_at_length_bound(make_backend):
    backend = make_backend(next_tokens=make_backend.text_tokens("a" * 50))
    session = Session(backend, SessionConfig(max_new_tokens=3))

    session.completion_init(HI, deterministic=True)
    assert session.generation_end_position == session.prompt_tokens + 3

    assert "".join(_drain(session)) == "aaa"
    assert session.stop_reason == "length"
    assert session.get_n_decode() == 3


def test_long_prompt_is_truncated_to_window(make_backend):
    backend = make_backend(n_ctx=64, next_tokens=make_backend.text_tokens("z" * 100))
    session = Session(backend, SessionConfig(min_generation_reserve=16))

    session.completion_init([("user", "x" * 200)], deterministic=True)
    assert session.prompt_tokens == 48
    assert session.generation_end_position == 63

    text = "".join(_drain(session))
    assert text == "z" * 15
    assert session.stop_reason == "length"
    assert session.n_cur <= backend.context_size


def test_first_token_guard_resamples_past_end_of_generation(make_backend):
    x = make_backend.BYTE_BASE + ord("x")

    def logits_fn(step):
        if step == 0:
            logits = torch.full((make_backend.N_VOCAB,), -10.0)
            logits[make_backend.EOS] = 5.0
            logits[x] = 5.0
            return logits
        return make_backend.one_hot(make_backend.EOS)

    backend = make_backend(logits_fn=logits_fn)
    session = Session(backend, SessionConfig(stochastic=StochasticParams(seed=11)))

    session.completion_init(HI)
    assert _drain(session) == ["x", ""]
    assert session.stop_reason == "eog"
    assert session.get_n_decode() == 1


def test_first_token_guard_gives_up_after_limit(make_backend):
    backend = make_backend(next_tokens=[])
    session = Session(backend)

    session.completion_init(HI, deterministic=True)
    assert session.completion_loop() == ""
    assert session.is_done
    assert session.stop_reason == "eog"
    assert session.get_n_decode() == 0
    # Initial draw plus 24 resamples.
    assert backend.piece_calls == 25


def test_guard_only_applies_to_first_token(make_backend):
    backend = make_backend(next_tokens=make_backend.text_tokens("a"))
    session = Session(backend)

    session.completion_init(HI, deterministic=True)
    _drain(session)
    assert backend.piece_calls == 2


def test_pinned_seed_is_reproducible(make_backend):
    letters = [make_backend.BYTE_BASE + ord(c) for c in "abcdef"]

    def logits_fn(step):
        if step >= 8:
            return make_backend.one_hot(make_backend.EOS)
        logits = torch.full((make_backend.N_VOCAB,), -10.0)
        for i, token in enumerate(letters):
            logits[token] = 2.0 - 0.1 * i
        return logits

    params = StochasticParams(seed=99)
    runs = []
    for _ in range(2):
        session = Session(make_backend(logits_fn=logits_fn), SessionConfig(stochastic=params))
        session.completion_init(HI)
        runs.append("".join(_drain(session)))

    assert runs[0] == runs[1]
    assert len(runs[0]) == 8
    assert set(runs[0]) <= set("abcdef")


def test_deterministic_completion_is_reproducible(make_backend):
    letters = [make_backend.BYTE_BASE + ord(c) for c in "abcdef"]

    def logits_fn(step):
        if step >= 6:
            return make_backend.one_hot(make_backend.EOS)
        gen = torch.Generator().manual_seed(step)
        logits = torch.full((make_backend.N_VOCAB,), -10.0)
        logits[letters] = torch.rand(len(letters), generator=gen)
        return logits

    runs = []
    for _ in range(2):
        backend = make_backend(logits_fn=logits_fn)
        session = Session(backend)
        session.completion_init(HI, deterministic=True)
        text = "".join(_drain(session))
        tokens = [call[0].token for call in backend.decode_calls[1:]]
        runs.append((text, tokens))

    assert runs[0] == runs[1]
    assert len(runs[0][1]) == 6
    assert set(runs[0][0]) <= set("abcdef")


def test_multibyte_text_streams_only_whole_characters(make_backend):
    backend = make_backend(next_tokens=make_backend.text_tokens("é🙂"))
    session = Session(backend)

    session.completion_init(HI, deterministic=True)
    chunks = _drain(session)
    assert "".join(chunks) == "é🙂"
    assert [c for c in chunks if c] == ["é", "🙂"]


def test_prompt_decode_failure_is_absorbed(make_backend):
    backend = make_backend(fail_decode_on=[0])
    session = Session(backend)

    session.completion_init(HI)
    assert session.is_done
    assert session.stop_reason == "error"
    assert session.completion_loop() == ""


def test_generation_decode_failure_returns_text_and_stops(make_backend):
    backend = make_backend(next_tokens=make_backend.text_tokens("Hey"), fail_decode_on=[2])
    session = Session(backend)

    session.completion_init(HI, deterministic=True)
    assert session.completion_loop() == "H"
    assert session.completion_loop() == "e"
    assert session.is_done
    assert session.stop_reason == "error"
    # Only the token the backend accepted is counted.
    assert session.get_n_decode() == 1
    assert session.n_cur == session.prompt_tokens + 1


def test_empty_conversation_ends_immediately(make_backend):
    backend = make_backend()
    session = Session(backend)
    session.completion_init([])
    assert session.is_done
    assert session.stop_reason == "error"
    assert backend.decode_calls == []


def test_window_overflow_ends_immediately(make_backend):
    backend = make_backend(n_ctx=1)
    session = Session(backend, SessionConfig(min_generation_reserve=0))
    session.completion_init(HI)
    assert session.is_done
    assert session.stop_reason == "error"


def test_completion_init_resets_previous_state(make_backend):
    backend = make_backend(next_tokens=make_backend.text_tokens("abcdefgh"))
    session = Session(backend)

    session.completion_init(HI, deterministic=True)
    session.completion_loop()
    session.completion_loop()
    clears_before = backend.memory_clears

    session.completion_init(HI, deterministic=True)
    assert backend.memory_clears == clears_before + 1
    assert session.get_n_decode() == 0
    assert session.n_cur == session.prompt_tokens


def test_clear_abandons_completion(make_backend):
    backend = make_backend(next_tokens=make_backend.text_tokens("abc"))
    session = Session(backend)

    session.completion_init(HI, deterministic=True)
    session.completion_loop()
    session.clear()

    assert session.is_done
    assert session.stop_reason == "cleared"
    assert session.n_cur == 0
    assert session.get_n_tokens() == 0
    assert session.completion_loop() == ""


def test_sampler_reused_for_same_strategy_and_swapped_otherwise(make_backend):
    session = Session(make_backend())

    session.completion_init(HI)
    chat = session.sampler
    assert isinstance(chat, ChatSampler)
    session.clear()

    session.completion_init(HI)
    assert session.sampler is chat
    session.clear()

    session.completion_init(HI, deterministic=True)
    greedy = session.sampler
    assert isinstance(greedy, GreedySampler)
    session.clear()

    session.completion_init(HI, deterministic=True)
    assert session.sampler is greedy


def test_batch_capacity_covers_context(make_backend):
    assert Session(make_backend(n_ctx=64)).batch_capacity == 512
    assert Session(make_backend(n_ctx=2048)).batch_capacity == 2048


def test_model_info(make_backend):
    info = Session(make_backend()).model_info()
    assert info == "fake 0.5B F32 | 1.00 GiB | 0.50 B params | cpu | n_ctx=256"


def test_bench_reports_markdown_table(make_backend):
    backend = make_backend()
    session = Session(backend)

    report = session.bench(8, 4, 2, 2)
    lines = report.strip().splitlines()
    assert len(lines) == 4
    assert "| pp 8 |" in lines[2]
    assert "| tg 4 |" in lines[3]
    assert "fake 0.5B F32 | 1.00 GiB | 0.50 B | cpu" in lines[2]

    # One prompt batch and `tg` generation batches per repeat.
    assert len(backend.decode_calls) == 2 * (1 + 4)
    assert backend.sync_calls == 2 * (1 + 4)
    assert [len(c) for c in backend.decode_calls[:5]] == [8, 2, 2, 2, 2]
    assert session.stop_reason == "cleared"


def test_bench_result_statistics(make_backend):
    result = Session(make_backend()).bench_result(4, 2, 1, 1)
    assert len(result.pp_samples) == 1
    assert result.pp_std == 0.0
    assert result.tg_std == 0.0
    assert result.pp_avg > 0
    assert result.to_dict()["prompt_len"] == 4


@pytest.mark.parametrize("args", [(0, 4, 1, 1), (4, 0, 1, 1), (4, 4, 0, 1), (4, 4, 1, 0), (1000, 4, 1, 1)])
def test_bench_rejects_bad_arguments(make_backend, args):
    with pytest.raises(ValueError):
        Session(make_backend()).bench_result(*args)


def test_bench_decode_failure_yields_empty_report(make_backend):
    session = Session(make_backend(fail_decode_on=[0]))
    assert session.bench(4, 2, 1, 1) == ""
    assert session.is_done


def test_close_refused_mid_generation(make_backend):
    backend = make_backend(next_tokens=make_backend.text_tokens("abc"))
    session = Session(backend)
    session.completion_init(HI, deterministic=True)

    with pytest.raises(SessionBusyError):
        session.close()
    assert not backend.closed

    session.clear()
    session.close()
    assert backend.closed
    assert session.closed
    assert session.sampler is None
    assert session.batch_capacity == 0
    # Idempotent.
    session.close()


def test_closed_session_rejects_operations(make_backend):
    session = Session(make_backend())
    session.close()
    with pytest.raises(SessionClosedError):
        session.completion_init(HI)
    with pytest.raises(SessionClosedError):
        session.completion_loop()
    with pytest.raises(SessionClosedError):
        session.model_info()


def test_context_manager_clears_and_closes(make_backend):
    backend = make_backend(next_tokens=make_backend.text_tokens("abc"))
    with Session(backend) as session:
        session.completion_init(HI, deterministic=True)
        session.completion_loop()
    assert backend.closed


def test_invalid_config_rejected(make_backend):
    with pytest.raises(ValueError):
        Session(make_backend(), SessionConfig(max_new_tokens=0))
