import json

import pytest

from relay.engine.errors import ToolValidationError
from relay.engine.json_repair import loads_repaired, repair_json
from relay.engine.models import ParamType, ToolCallRequest, ToolDefinition, ToolParameter
from relay.engine.repair import ToolCallRepairer, local_repair


@pytest.mark.parametrize(
    "broken, expected",
    [
        ('{"message": "he said "hi" to me"}', {"message": 'he said "hi" to me'}),
        ('{"a": 1, "b": [1, 2,],}', {"a": 1, "b": [1, 2]}),
        ('```json\n{"a": true}\n```', {"a": True}),
        ("{'a': 'single quoted'}", {"a": "single quoted"}),
        ('{"a": "line one\nline two"}', {"a": "line one\nline two"}),
        ('{"a": "unterminated', {"a": "unterminated"}),
        ('{"a": {"b": [1, 2', {"a": {"b": [1, 2]}}),
        ('{"flag": True, "none": None}', {"flag": True, "none": None}),
        ('{path: "x.txt"}', {"path": "x.txt"}),
        ('Sure! {"a": 1} hope that helps', {"a": 1}),
    ],
)
def test_repair_json_fixes_common_mistakes(broken, expected):
    assert json.loads(repair_json(broken)) == expected


def test_valid_json_is_returned_unchanged():
    text = '{"a": [1, 2, {"b": null}]}'
    assert repair_json(text) == text


def test_loads_repaired_raises_value_error_when_hopeless():
    with pytest.raises(ValueError):
        loads_repaired("not json at all")


WRITE = ToolDefinition(
    name="write_note",
    description="",
    parameters=(
        ToolParameter("message", ParamType.STRING),
        ToolParameter("count", ParamType.NUMBER, required=False),
    ),
)


class _FailingProvider:
    def __init__(self):
        self.calls = 0

    async def complete(self, *args, **kwargs):
        self.calls += 1
        raise AssertionError("remote repair should not run")


@pytest.mark.asyncio
async def test_unescaped_quote_is_repaired_locally_without_remote_call():
    provider = _FailingProvider()
    repairer = ToolCallRepairer(provider, "small-model")
    request = ToolCallRequest("write_note", '{"message": "say "cheese" now"}', "c1")
    err = ToolValidationError("write_note", ["input is not a JSON object"])
    repaired = await repairer.repair(request, WRITE, err)
    assert repaired == {"message": 'say "cheese" now'}
    assert provider.calls == 0


def test_local_repair_coerces_stringified_scalars():
    request = ToolCallRequest("write_note", {"message": "x", "count": "3"}, "c2")
    assert local_repair(request, WRITE) == {"message": "x", "count": 3}


class _RepairProvider:
    def __init__(self, reply):
        self.reply = reply
        self.prompts = []

    async def complete(self, prompt, **kwargs):
        self.prompts.append(prompt)
        return self.reply


@pytest.mark.asyncio
async def test_remote_repair_used_when_local_fails():
    provider = _RepairProvider('{"message": "fixed"}')
    repairer = ToolCallRepairer(provider, "small-model")
    request = ToolCallRequest("write_note", {"msg": "wrong key"}, "c3")
    err = ToolValidationError("write_note", ["'message' is required"])
    assert await repairer.repair(request, WRITE, err) == {"message": "fixed"}
    assert 'The model tried to call the tool "write_note"' in provider.prompts[0]
    assert "Please fix the arguments." in provider.prompts[0]


@pytest.mark.asyncio
async def test_invalid_remote_reply_reraises_original_error():
    provider = _RepairProvider('{"message": 42}')
    repairer = ToolCallRepairer(provider)
    request = ToolCallRequest("write_note", {}, "c4")
    err = ToolValidationError("write_note", ["'message' is required"])
    with pytest.raises(ToolValidationError) as excinfo:
        await repairer.repair(request, WRITE, err)
    assert excinfo.value is err


@pytest.mark.asyncio
async def test_without_provider_original_error_propagates():
    repairer = ToolCallRepairer(None)
    err = ToolValidationError("write_note", ["'message' is required"])
    with pytest.raises(ToolValidationError):
        await repairer.repair(ToolCallRequest("write_note", {}, "c5"), WRITE, err)
