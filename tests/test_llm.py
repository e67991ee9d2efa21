import asyncio

import pytest

from leadscout.errors import GenerationUnavailable, RunCancelled
from leadscout.keys import KeyRotationManager
from leadscout.services.llm import TextGenerator
from leadscout.state import CancelToken


class Chunk:
    def __init__(self, content):
        self.content = content


class StatusError(Exception):
    def __init__(self, status_code):
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}")


class FakeChat:
    def __init__(self, key, model, script):
        self.key = key
        self.model = model
        self.script = script

    async def astream(self, messages):
        outcome = self.script.get((self.key, self.model), self.script.get(self.key, ["ok"]))
        if isinstance(outcome, BaseException):
            raise outcome
        for part in outcome:
            if part == "<slow>":
                await asyncio.sleep(10)
                continue
            yield Chunk(part)


def _gen(script, keys=("k1",), models=("m1",)):
    mgr = KeyRotationManager()
    for model in models:
        mgr.register(f"openai:{model}", list(keys))
    created = []

    def factory(api_key, model):
        created.append(api_key)
        return FakeChat(api_key, model, script)

    return TextGenerator(mgr, models=models, client_factory=factory), created


@pytest.mark.asyncio
async def test_complete_streams_tokens_and_joins():
    gen, _ = _gen({"k1": ["Par", "is\n", "Lyon"]})
    tokens, done = [], []
    text = await gen.complete("cities?", on_token=tokens.append, on_complete=done.append)
    assert text == "Paris\nLyon"
    assert tokens == ["Par", "is\n", "Lyon"]
    assert done == ["Paris\nLyon"]


@pytest.mark.asyncio
async def test_complete_rotates_key_on_rate_limit():
    gen, created = _gen({"k1": StatusError(429), "k2": ["fine"]}, keys=("k1", "k2"))
    assert await gen.complete("hi") == "fine"
    assert created == ["k1", "k2"]


@pytest.mark.asyncio
async def test_all_keys_spent_raises_generation_unavailable():
    errors = []
    gen, created = _gen({"k1": StatusError(429)})
    with pytest.raises(GenerationUnavailable):
        await gen.complete("hi", on_error=errors.append)
    # one attempt, the pool's reset probe, then the chain re-probe
    assert created == ["k1", "k1", "k1"]
    assert len(errors) == 1


@pytest.mark.asyncio
async def test_next_model_answers_when_first_is_rate_limited():
    script = {("k1", "gpt-4o-mini"): StatusError(429), ("k1", "gpt-4.1-mini"): ["from fallback"]}
    gen, _ = _gen(script, models=("gpt-4o-mini", "gpt-4.1-mini"))
    used = []
    real_factory = gen._client_factory

    def factory(api_key, model):
        used.append(model)
        return real_factory(api_key, model)

    gen._client_factory = factory
    assert await gen.complete("hi") == "from fallback"
    # first model: key, then reset probe; second model answers
    assert used == ["gpt-4o-mini", "gpt-4o-mini", "gpt-4.1-mini"]
    assert gen.keys.pool("openai:gpt-4o-mini").keys[0].exhausted is True
    assert gen.keys.pool("openai:gpt-4.1-mini").keys[0].exhausted is False


@pytest.mark.asyncio
async def test_first_model_reprobed_after_whole_chain_spent():
    calls = []

    class Recovering:
        def __init__(self, model):
            self.model = model

        async def astream(self, messages):
            calls.append(self.model)
            # first model recovers on its third call
            if self.model == "m1" and calls.count("m1") >= 3:
                yield Chunk("back")
                return
            raise StatusError(429)

    mgr = KeyRotationManager()
    mgr.register("openai:m1", ["k1"])
    mgr.register("openai:m2", ["k1"])
    gen = TextGenerator(mgr, models=("m1", "m2"), client_factory=lambda key, model: Recovering(model))
    assert await gen.complete("hi") == "back"
    assert calls == ["m1", "m1", "m2", "m2", "m1"]
    assert mgr.pool("openai:m1").keys[0].exhausted is False


def test_chain_probes_only_the_first_model():
    gen, _ = _gen({}, models=("m1", "m2"))
    assert [(s.service, s.probe_on_exhaustion) for s in gen.chain] == [("openai:m1", True), ("openai:m2", False)]


@pytest.mark.asyncio
async def test_no_keys_means_unavailable():
    gen = TextGenerator(KeyRotationManager())
    assert gen.available is False
    with pytest.raises(GenerationUnavailable):
        await gen.complete("hi")


@pytest.mark.asyncio
async def test_other_errors_propagate():
    gen, _ = _gen({"k1": ValueError("bad request")})
    with pytest.raises(ValueError):
        await gen.complete("hi")


@pytest.mark.asyncio
async def test_cancel_interrupts_stream():
    token = CancelToken()
    gen, _ = _gen({"k1": ["partial", "<slow>", "never"]})

    async def _stop():
        await asyncio.sleep(0.02)
        token.cancel()

    stopper = asyncio.create_task(_stop())
    with pytest.raises(RunCancelled):
        await gen.complete("hi", cancel_token=token)
    await stopper
