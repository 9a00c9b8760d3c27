"""Template resolution against an execution context."""

from flowkernel.service.context import ExecutionContext, NodeResult, NodeStatus
from flowkernel.service.variables import (
    default_node_value,
    find_tokens,
    parse_reference,
    resolve_template,
    to_display,
)


def _context(**kwargs) -> ExecutionContext:
    context = ExecutionContext(
        "exec-1",
        node_names={"信息填写": "input-1", "Writer": "ai-1", "Broken": "ai-2"},
        **kwargs,
    )
    context.record_result(
        NodeResult(
            node_id="input-1",
            node_name="信息填写",
            node_type="INPUT",
            status=NodeStatus.SUCCESS,
            data={"产品名称": "蛋白棒", "price": 12, "tags": ["snack", "protein"]},
        )
    )
    context.record_result(
        NodeResult(
            node_id="ai-1",
            node_name="Writer",
            node_type="PROCESS",
            status=NodeStatus.SUCCESS,
            data={"结果": "copy text", "meta": '{"score": 0.9}'},
        )
    )
    context.record_result(
        NodeResult(
            node_id="ai-2",
            node_name="Broken",
            node_type="PROCESS",
            status=NodeStatus.ERROR,
            data={"result": "should not leak"},
            error="boom",
        )
    )
    return context


def test_chinese_field_reference_resolves():
    context = _context()
    prompt = context.resolve("为{{信息填写.产品名称}}写一段广告文案")
    assert prompt == "为蛋白棒写一段广告文案"
    assert "蛋白棒" in prompt


def test_node_id_is_a_fallback_root():
    context = _context()
    assert context.resolve("{{input-1.price}}") == "12"


def test_result_and_chinese_result_alias_each_other():
    context = _context()
    assert context.resolve("{{Writer.result}}") == "copy text"
    assert context.resolve("{{Writer.结果}}") == "copy text"


def test_bare_node_reference_uses_default_value():
    context = _context()
    assert context.resolve("{{Writer}}") == "copy text"
    assert default_node_value({"only": 3}) == 3
    assert default_node_value({"a": 1, "b": 2}) == {"a": 1, "b": 2}


def test_json_string_values_are_traversed():
    context = _context()
    assert context.resolve("{{Writer.meta.score}}") == "0.9"


def test_array_index_and_container_display():
    context = _context()
    assert context.resolve("{{信息填写.tags.1}}") == "protein"
    assert context.resolve("{{信息填写.tags}}") == '["snack","protein"]'


def test_unknown_tokens_stay_literal():
    context = _context()
    template = "a {{Missing.value}} b {{信息填写.nope}} c"
    assert context.resolve(template) == template
    assert context.unresolved(template) == ["{{Missing.value}}", "{{信息填写.nope}}"]


def test_failed_node_output_is_not_visible():
    context = _context()
    assert context.resolve("{{Broken.result}}") == "{{Broken.result}}"


def test_resolution_is_idempotent():
    context = _context()
    template = "{{信息填写.产品名称}} / {{Unknown}} / {{Writer}}"
    once = context.resolve(template)
    assert context.resolve(once) == once


def test_globals_and_input_are_last_resort():
    context = _context(input={"topic": "fitness"}, global_variables={"brand": "Acme"})
    assert context.resolve("{{topic}} by {{brand}}") == "fitness by Acme"
    assert context.resolve("{{triggerInput.topic}}") == "fitness"


def test_loop_variables_shadow_everything_inside_iteration():
    context = _context(global_variables={"item": "global"})
    child = context.iteration_scope({"item": {"name": "first"}, "loop": {"index": 0}}, 0)
    assert child.resolve("{{item.name}}") == "first"
    assert child.resolve("{{loop.index}}") == "0"
    assert child.resolve("{{信息填写.产品名称}}") == "蛋白棒"
    assert context.resolve("{{item}}") == "global"


def test_single_token_value_keeps_raw_type():
    context = _context()
    resolved = context.resolve_value({"tags": "{{信息填写.tags}}", "label": "x {{信息填写.price}}"})
    assert resolved == {"tags": ["snack", "protein"], "label": "x 12"}


def test_parse_reference_rejects_empty_segments():
    assert parse_reference("a..b") is None
    ref = parse_reference(" node . field ")
    assert ref.root == "node"
    assert ref.path == ("field",)
    assert [r.dotted for r in find_tokens("{{a.b}} {{c}}")] == ["a.b", "c"]


def test_non_strings_pass_through_resolution():
    context = _context()
    assert resolve_template(42, context) == 42
    assert to_display(True) == "true"
    assert to_display(None) == ""
    assert to_display(1.5) == "1.5"
