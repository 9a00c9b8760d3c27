"""End-to-end scheduler behavior over the memory store."""

import asyncio

import httpx

from flowkernel.service.context import NodeStatus
from flowkernel.storage.models import ExecutionStatus

TENANT = "org-test"
USER = "user-test"


def _edges(*pairs):
    edges = []
    for pair in pairs:
        source, target = pair[0], pair[1]
        edge = {"source": source, "target": target}
        if len(pair) > 2:
            edge["sourceHandle"] = pair[2]
        edges.append(edge)
    return edges


def _input(fields, name="Input", node_id="in"):
    return {"id": node_id, "type": "INPUT", "name": name, "config": {"fields": fields}}


def _ai(node_id, name, prompt):
    return {"id": node_id, "type": "AI", "name": name, "config": {"userPrompt": prompt}}


def _http(node_id, url, name=None):
    return {
        "id": node_id,
        "type": "HTTP",
        "name": name or node_id,
        "config": {"url": url, "retry": {"maxRetries": 0, "retryDelayMs": 0}},
    }


def _output(template=None, node_id="out"):
    config = {"format": "text"}
    if template is not None:
        config["template"] = template
    return {"id": node_id, "type": "OUTPUT", "name": "Output", "config": config}


async def _run(engine, store, nodes, edges, input=None, settings=None):
    document = {"nodes": nodes, "edges": edges}
    if settings:
        document["settings"] = settings
    workflow = store.create_workflow(TENANT, "test workflow", document)
    return await engine.execute_workflow(workflow.id, TENANT, USER, input or {})


def _by_id(result):
    return {r.node_id: r for r in result.node_results}


def _fail_on_path(path):
    def handler(request):
        if request.url.path == path:
            return httpx.Response(500, json={"error": "upstream broke"})
        return httpx.Response(200, json={"ok": True})

    return handler


async def test_chinese_input_scenario_resolves_product_name(engine, store, fake_ai):
    result = await _run(
        engine,
        store,
        [
            _input([{"name": "产品名称", "required": True}], name="信息填写"),
            _ai("ai", "文案生成", "为{{信息填写.产品名称}}写一段广告文案"),
            _output("{{文案生成}}"),
        ],
        _edges(("in", "ai"), ("ai", "out")),
        input={"产品名称": "蛋白棒"},
    )

    assert result.status == ExecutionStatus.COMPLETED
    prompt = fake_ai.calls[0]["messages"][-1]["content"]
    assert "蛋白棒" in prompt
    assert result.output["result"] == "reply to: 为蛋白棒写一段广告文案"
    assert result.total_tokens == 20
    assert result.prompt_tokens == 12
    persisted = store.get_execution(result.execution_id, TENANT)
    assert persisted.status == ExecutionStatus.COMPLETED
    assert persisted.total_tokens == 20


async def test_input_scoped_by_node_name(engine, store, fake_ai):
    result = await _run(
        engine,
        store,
        [_input([{"name": "产品名称"}], name="信息填写"), _ai("ai", "Writer", "{{信息填写.产品名称}}"), _output()],
        _edges(("in", "ai"), ("ai", "out")),
        input={"信息填写": {"产品名称": "蛋白棒"}},
    )
    assert result.status == ExecutionStatus.COMPLETED
    assert fake_ai.calls[0]["messages"][-1]["content"] == "蛋白棒"


async def test_missing_required_input_fails_the_run(engine, store, fake_ai):
    result = await _run(
        engine,
        store,
        [_input([{"name": "topic", "required": True}]), _ai("ai", "Writer", "{{Input.topic}}"), _output()],
        _edges(("in", "ai"), ("ai", "out")),
    )
    nodes = _by_id(result)
    assert result.status == ExecutionStatus.FAILED
    assert nodes["in"].status == NodeStatus.ERROR
    assert nodes["in"].data == {"missingFields": ["topic"]}
    assert nodes["ai"].skip_reason == "upstream_failed"
    assert fake_ai.calls == []


async def test_condition_false_branch_skips_true_only_nodes(engine, store, fake_ai):
    condition = {
        "id": "check",
        "type": "CONDITION",
        "name": "Check",
        "config": {"conditions": [{"variable": "{{Input.score}}", "operator": "greaterThan", "value": 50}]},
    }
    result = await _run(
        engine,
        store,
        [
            _input([{"name": "score"}]),
            condition,
            _ai("yes", "Praise", "great {{Input.score}}"),
            _ai("no", "Encourage", "keep going {{Input.score}}"),
            _output(),
        ],
        _edges(("in", "check"), ("check", "yes", "true"), ("check", "no", "false"), ("yes", "out"), ("no", "out")),
        input={"score": 10},
    )
    nodes = _by_id(result)
    assert result.status == ExecutionStatus.COMPLETED
    assert nodes["check"].branch == "false"
    assert nodes["yes"].status == NodeStatus.SKIPPED
    assert nodes["yes"].skip_reason == "branch_not_taken"
    assert nodes["no"].status == NodeStatus.SUCCESS
    assert nodes["out"].status == NodeStatus.SUCCESS
    assert [call["messages"][-1]["content"] for call in fake_ai.calls] == ["keep going 10"]


async def test_switch_default_case_id_selects_its_edge(engine, store):
    switch = {
        "id": "sw",
        "type": "SWITCH",
        "name": "Tier",
        "config": {
            "switchVariable": "{{Input.tier}}",
            "cases": [{"id": "gold", "value": "gold"}, {"id": "fallback", "isDefault": True}],
        },
    }
    result = await _run(
        engine,
        store,
        [_input([{"name": "tier"}]), switch, _ai("g", "Gold", "vip"), _ai("f", "Other", "regular"), _output()],
        _edges(("in", "sw"), ("sw", "g", "gold"), ("sw", "f", "fallback"), ("g", "out"), ("f", "out")),
        input={"tier": "silver"},
    )
    nodes = _by_id(result)
    assert nodes["sw"].branch == "default"
    assert nodes["sw"].data["matchedCase"] == "fallback"
    assert nodes["g"].skip_reason == "branch_not_taken"
    assert nodes["f"].status == NodeStatus.SUCCESS
    assert result.status == ExecutionStatus.COMPLETED


async def test_failure_on_only_path_to_output_fails_execution(engine, store, fake_ai):
    fake_ai.fail_with = RuntimeError("provider down")
    result = await _run(
        engine,
        store,
        [_input([{"name": "topic"}]), _ai("p", "Writer", "about {{Input.topic}}"), _output()],
        _edges(("in", "p"), ("p", "out")),
        input={"topic": "tea"},
    )
    nodes = _by_id(result)
    assert result.status == ExecutionStatus.FAILED
    assert nodes["p"].error == "RuntimeError: provider down"
    assert nodes["out"].skip_reason == "upstream_failed"
    assert "node 'Writer' failed" in result.error
    assert store.get_execution(result.execution_id, TENANT).error == result.error


async def test_failure_off_required_path_completes(engine, store, http_handler):
    http_handler.handler = _fail_on_path("/fail")
    result = await _run(
        engine,
        store,
        [
            _input([{"name": "topic"}]),
            _http("a", "https://api.test/fail"),
            _ai("b", "Summary", "summarize {{Input.topic}}"),
            _ai("c", "Follow", "use {{a.body}}"),
            _output(),
        ],
        _edges(("in", "a"), ("a", "c"), ("c", "out"), ("in", "b"), ("b", "out")),
        input={"topic": "tea"},
    )
    nodes = _by_id(result)
    assert nodes["a"].status == NodeStatus.ERROR
    assert nodes["a"].data["statusCode"] == 500
    assert nodes["c"].status == NodeStatus.SKIPPED
    assert nodes["c"].skip_reason == "upstream_failed"
    assert nodes["out"].status == NodeStatus.SUCCESS
    assert result.status == ExecutionStatus.COMPLETED
    assert result.error is None


async def test_fail_fast_halts_remaining_nodes(engine, store, http_handler, fake_ai):
    http_handler.handler = _fail_on_path("/fail")
    result = await _run(
        engine,
        store,
        [_input([]), _http("a", "https://api.test/fail"), _ai("x", "Side", "independent"), _output()],
        _edges(("in", "a"), ("a", "out"), ("in", "x")),
        settings={"errorStrategy": "fail_fast"},
    )
    nodes = _by_id(result)
    assert result.status == ExecutionStatus.FAILED
    assert nodes["x"].skip_reason == "execution_halted"
    assert nodes["out"].skip_reason == "execution_halted"
    assert fake_ai.calls == []


async def test_for_loop_runs_body_per_item(engine, store, fake_ai):
    loop = {
        "id": "loop",
        "type": "LOOP",
        "name": "Each",
        "config": {
            "loopType": "FOR",
            "forConfig": {"arrayVariable": "{{Input.items}}", "itemName": "item"},
            "bodyNodeIds": ["body"],
        },
    }
    result = await _run(
        engine,
        store,
        [
            _input([{"name": "items"}]),
            loop,
            _ai("body", "Describe", "describe {{item}} at {{loop.iteration}}"),
            _output("{{Each.iterations}} items"),
        ],
        _edges(("in", "loop"), ("loop", "body"), ("body", "out")),
        input={"items": ["a", "b", "c"]},
    )
    nodes = _by_id(result)
    assert result.status == ExecutionStatus.COMPLETED
    loop_data = nodes["loop"].data
    assert loop_data["iterations"] == 3
    assert loop_data["allSucceeded"] is True
    assert loop_data["results"][1]["item"] == "b"
    assert loop_data["results"][1]["outputs"]["Describe"]["result"] == "reply to: describe b at 2"
    assert result.output["result"] == "3 items"
    # body nodes are not part of the main result list
    assert "body" not in nodes
    assert result.total_tokens == 60


async def test_loop_is_capped_by_workflow_settings(engine, store):
    loop = {
        "id": "loop",
        "type": "LOOP",
        "name": "Each",
        "config": {"loopType": "FOR", "forConfig": {"arrayVariable": "{{Input.items}}"}, "bodyNodeIds": ["body"]},
    }
    result = await _run(
        engine,
        store,
        [_input([{"name": "items"}]), loop, _ai("body", "Describe", "{{item}}"), _output()],
        _edges(("in", "loop"), ("loop", "out")),
        input={"items": list(range(10))},
        settings={"maxLoopIterations": 4},
    )
    loop_data = _by_id(result)["loop"].data
    assert loop_data["iterations"] == 4
    assert loop_data["truncated"] is True


async def test_merge_unions_branch_outputs(engine, store):
    result = await _run(
        engine,
        store,
        [
            _input([{"name": "topic"}]),
            _ai("a", "Pros", "pros of {{Input.topic}}"),
            _ai("b", "Cons", "cons of {{Input.topic}}"),
            {"id": "m", "type": "MERGE", "name": "Both"},
            _output("{{Both.Pros.result}} | {{Both.Cons.result}}"),
        ],
        _edges(("in", "a"), ("in", "b"), ("a", "m"), ("b", "m"), ("m", "out")),
        input={"topic": "tea"},
        settings={"enableParallelExecution": True},
    )
    merged = _by_id(result)["m"].data
    assert merged["_merge"]["merged"] == ["Pros", "Cons"]
    assert result.output["result"] == "reply to: pros of tea | reply to: cons of tea"


async def test_structural_error_fails_before_any_node(engine, store, fake_ai):
    result = await _run(
        engine,
        store,
        [_ai("a", "A", "x"), _ai("b", "B", "y")],
        _edges(("a", "b"), ("b", "a")),
    )
    assert result.status == ExecutionStatus.FAILED
    assert "cycle" in result.error
    assert result.node_results == []
    assert fake_ai.calls == []


async def test_whole_execution_timeout_persists_failure(engine, store, http_handler):
    async def slow(request):
        await asyncio.sleep(2)
        return httpx.Response(200, json={})

    http_handler.handler = slow
    result = await _run(
        engine,
        store,
        [_input([]), _http("h", "https://api.test/slow"), _output()],
        _edges(("in", "h"), ("h", "out")),
        settings={"timeout": 0.2},
    )
    assert result.status == ExecutionStatus.FAILED
    assert "timeout" in result.error
    assert store.get_execution(result.execution_id, TENANT).status == ExecutionStatus.FAILED


async def test_without_output_nodes_sinks_become_the_result(engine, store):
    result = await _run(
        engine,
        store,
        [_input([{"name": "topic"}]), _ai("a", "Left", "l"), _ai("b", "Right", "r")],
        _edges(("in", "a"), ("in", "b")),
    )
    assert result.status == ExecutionStatus.COMPLETED
    assert set(result.output) == {"Left", "Right"}


async def test_output_file_is_written_and_recorded(engine, store, settings):
    output = {
        "id": "out",
        "type": "OUTPUT",
        "name": "Report",
        "config": {"format": "markdown", "writeFile": True, "fileName": "report-{{执行ID}}"},
    }
    result = await _run(
        engine,
        store,
        [_input([{"name": "topic"}]), _ai("a", "Draft", "{{Input.topic}}"), output],
        _edges(("in", "a"), ("a", "out")),
        input={"topic": "tea"},
    )
    files = store.list_output_files(result.execution_id)
    assert len(files) == 1
    assert files[0].file_name == f"report-{result.execution_id[:8]}.md"
    with open(files[0].path, encoding="utf-8") as handle:
        assert "reply to: tea" in handle.read()
    assert result.to_dict()["outputFiles"][0]["fileName"] == files[0].file_name


async def test_org_default_ai_config_is_used(engine, store, runtime, fake_ai):
    store.create_ai_config(
        TENANT,
        "primary",
        "openai",
        runtime.cipher.encrypt("sk-org-key"),
        default_model="gpt-4o",
        is_default=True,
    )
    result = await _run(
        engine,
        store,
        [_input([]), _ai("a", "Draft", "hello"), _output()],
        _edges(("in", "a"), ("a", "out")),
    )
    assert result.status == ExecutionStatus.COMPLETED
    assert fake_ai.configs[0].api_key == "sk-org-key"
    assert fake_ai.calls[0]["model"] == "gpt-4o"
    assert result.estimated_cost > 0


async def test_unknown_ai_config_is_a_node_error(engine, store):
    node = {"id": "a", "type": "AI", "name": "Draft", "config": {"userPrompt": "x", "aiConfigId": "missing"}}
    result = await _run(engine, store, [_input([]), node, _output()], _edges(("in", "a"), ("a", "out")))
    assert "not found" in _by_id(result)["a"].error
    assert result.status == ExecutionStatus.FAILED


async def test_merge_waits_for_configured_input_without_edge(engine, store):
    result = await _run(
        engine,
        store,
        [
            _input([{"name": "topic"}]),
            _ai("a", "Pros", "pros of {{Input.topic}}"),
            {"id": "m", "type": "MERGE", "name": "Both", "config": {"inputs": ["Pros", "Cons"]}},
            _output("{{Both.Pros.result}} | {{Both.Cons.result}}"),
            _ai("b", "Cons", "cons of {{Input.topic}}"),
        ],
        _edges(("in", "a"), ("in", "b"), ("a", "m"), ("m", "out")),
        input={"topic": "tea"},
    )
    assert result.status == ExecutionStatus.COMPLETED
    assert _by_id(result)["m"].data["_merge"]["merged"] == ["Pros", "Cons"]
    assert result.output["result"] == "reply to: pros of tea | reply to: cons of tea"


def _merge_graph(mode="union", error_strategy="continue", first=None):
    return [
        _input([{"name": "topic"}]),
        first or _ai("a", "Pros", "pros of {{Input.topic}}"),
        _ai("b", "Cons", "cons of {{Input.topic}}"),
        {
            "id": "m",
            "type": "MERGE",
            "name": "Both",
            "config": {"inputs": ["a", "b"], "mode": mode, "errorStrategy": error_strategy},
        },
    ]


_MERGE_EDGES = _edges(("in", "a"), ("in", "b"), ("a", "m"), ("b", "m"))


async def test_merge_overwrite_lets_later_inputs_win(engine, store):
    result = await _run(engine, store, _merge_graph("overwrite"), _MERGE_EDGES, input={"topic": "tea"})
    merged = _by_id(result)["m"].data
    assert merged["result"] == "reply to: cons of tea"
    assert merged["modality"] == "text"


async def test_merge_concat_collects_items_in_input_order(engine, store):
    result = await _run(engine, store, _merge_graph("concat"), _MERGE_EDGES, input={"topic": "tea"})
    merged = _by_id(result)["m"].data
    assert merged["items"] == ["reply to: pros of tea", "reply to: cons of tea"]
    assert merged["result"] == merged["items"]


async def test_merge_fail_fast_errors_on_failed_input(engine, store, http_handler):
    http_handler.handler = _fail_on_path("/fail")
    result = await _run(
        engine,
        store,
        _merge_graph(error_strategy="fail_fast", first=_http("a", "https://api.test/fail", name="Fetch")),
        _MERGE_EDGES,
        input={"topic": "tea"},
    )
    merge = _by_id(result)["m"]
    assert merge.status == NodeStatus.ERROR
    assert merge.error == "merge input(s) failed: Fetch"
    assert result.status == ExecutionStatus.FAILED


async def test_merge_collect_keeps_failures_beside_output(engine, store, http_handler):
    http_handler.handler = _fail_on_path("/fail")
    result = await _run(
        engine,
        store,
        _merge_graph(error_strategy="collect", first=_http("a", "https://api.test/fail", name="Fetch")),
        _MERGE_EDGES,
        input={"topic": "tea"},
    )
    merged = _by_id(result)["m"].data
    assert result.status == ExecutionStatus.COMPLETED
    assert merged["_merge"] == {"merged": ["Cons"], "skipped": [], "failed": ["Fetch"]}
    assert merged["_errors"]["Fetch"].startswith("HTTP 500")
    assert "Cons" in merged


def _while_loop(condition, max_iterations=None):
    while_config = {"condition": condition}
    if max_iterations:
        while_config["maxIterations"] = max_iterations
    return {
        "id": "loop",
        "type": "LOOP",
        "name": "Repeat",
        "config": {"loopType": "WHILE", "whileConfig": while_config, "bodyNodeIds": ["tick"]},
    }


def _tick():
    return {
        "id": "tick",
        "type": "CODE",
        "name": "Tick",
        "config": {"language": "expression", "code": "n * 10", "inputs": {"n": "{{loop.iteration}}"}},
    }


async def test_while_loop_runs_until_condition_fails(engine, store):
    loop = _while_loop({"variable": "{{Tick.result}}", "operator": "notEquals", "value": 30})
    result = await _run(
        engine,
        store,
        [_input([]), loop, _tick(), _output("{{Repeat.iterations}} ticks")],
        _edges(("in", "loop"), ("loop", "tick"), ("tick", "out")),
    )
    loop_data = _by_id(result)["loop"].data
    assert result.status == ExecutionStatus.COMPLETED
    assert loop_data["iterations"] == 3
    assert [entry["outputs"]["Tick"]["result"] for entry in loop_data["results"]] == [10, 20, 30]
    assert "terminatedByLimit" not in loop_data
    assert result.output["result"] == "3 ticks"


async def test_while_loop_stops_at_its_iteration_cap(engine, store):
    loop = _while_loop({"variable": "{{Input.go}}", "operator": "equals", "value": "yes"}, max_iterations=3)
    result = await _run(
        engine,
        store,
        [_input([{"name": "go"}]), loop, _tick(), _output()],
        _edges(("in", "loop"), ("loop", "out")),
        input={"go": "yes"},
    )
    loop_data = _by_id(result)["loop"].data
    assert loop_data["iterations"] == 3
    assert loop_data["terminatedByLimit"] is True


def _divide_loop(continue_on_error):
    return [
        _input([{"name": "items"}]),
        {
            "id": "loop",
            "type": "LOOP",
            "name": "Each",
            "config": {
                "loopType": "FOR",
                "forConfig": {"arrayVariable": "{{Input.items}}"},
                "bodyNodeIds": ["div"],
                "continueOnError": continue_on_error,
            },
        },
        {
            "id": "div",
            "type": "CODE",
            "name": "Divide",
            "config": {"language": "expression", "code": "10 / n", "inputs": {"n": "{{item}}"}},
        },
        _output(),
    ]


async def test_loop_continue_on_error_keeps_iterating(engine, store):
    result = await _run(
        engine,
        store,
        _divide_loop(True),
        _edges(("in", "loop"), ("loop", "out")),
        input={"items": [5, 0, 2]},
    )
    loop_data = _by_id(result)["loop"].data
    assert result.status == ExecutionStatus.COMPLETED
    assert loop_data["iterations"] == 3
    assert loop_data["allSucceeded"] is False
    assert [entry["success"] for entry in loop_data["results"]] == [True, False, True]
    assert "Divide" in loop_data["results"][1]["errors"]
    assert loop_data["results"][2]["outputs"]["Divide"]["result"] == 5


async def test_loop_failure_without_continue_on_error_fails_the_loop(engine, store):
    result = await _run(
        engine,
        store,
        _divide_loop(False),
        _edges(("in", "loop"), ("loop", "out")),
        input={"items": [5, 0, 2]},
    )
    loop = _by_id(result)["loop"]
    assert loop.status == NodeStatus.ERROR
    assert loop.error.startswith("loop iteration 1 failed: Divide:")
    assert loop.data["iterations"] == 2
    assert result.status == ExecutionStatus.FAILED


def _grouped_branch():
    condition = {
        "id": "check",
        "type": "CONDITION",
        "name": "Check",
        "config": {"conditions": [{"variable": "{{Input.score}}", "operator": "greaterOrEqual", "value": 50}]},
    }
    group = {"id": "grp", "type": "GROUP", "name": "Celebrate", "config": {"childNodeIds": ["g1", "g2"]}}
    return [
        _input([{"name": "score"}]),
        condition,
        group,
        _ai("g1", "First", "congrats on {{Input.score}}"),
        _ai("g2", "Second", "{{First.result}} again"),
        _ai("alt", "Retry", "try again"),
        _output(),
    ]


_GROUP_EDGES = _edges(("in", "check"), ("check", "grp", "true"), ("check", "alt", "false"), ("grp", "out"), ("alt", "out"))


async def test_group_runs_children_in_order_on_taken_branch(engine, store, fake_ai):
    result = await _run(engine, store, _grouped_branch(), _GROUP_EDGES, input={"score": 80})
    nodes = _by_id(result)
    assert result.status == ExecutionStatus.COMPLETED
    assert "grp" not in nodes
    assert nodes["g2"].data["result"] == "reply to: reply to: congrats on 80 again"
    assert nodes["alt"].skip_reason == "branch_not_taken"
    assert [call["messages"][-1]["content"] for call in fake_ai.calls] == [
        "congrats on 80",
        "reply to: congrats on 80 again",
    ]


async def test_group_children_skip_when_branch_not_taken(engine, store, fake_ai):
    result = await _run(engine, store, _grouped_branch(), _GROUP_EDGES, input={"score": 10})
    nodes = _by_id(result)
    assert result.status == ExecutionStatus.COMPLETED
    assert nodes["g1"].skip_reason == "branch_not_taken"
    assert nodes["g2"].skip_reason == "branch_not_taken"
    assert nodes["alt"].status == NodeStatus.SUCCESS
    assert nodes["out"].status == NodeStatus.SUCCESS


async def test_trigger_entry_exposes_payload(engine, store, fake_ai):
    trigger = {"id": "t", "type": "TRIGGER", "name": "Start", "config": {"triggerType": "webhook"}}
    result = await _run(
        engine,
        store,
        [trigger, _ai("a", "Echo", "{{Start.event}} from {{triggerInput.repo}}"), _output()],
        _edges(("t", "a"), ("a", "out")),
        input={"event": "push", "repo": "flowkernel"},
    )
    nodes = _by_id(result)
    assert result.status == ExecutionStatus.COMPLETED
    assert nodes["t"].data["triggerType"] == "webhook"
    assert nodes["t"].data["input"] == {"event": "push", "repo": "flowkernel"}
    assert fake_ai.calls[0]["messages"][-1]["content"] == "push from flowkernel"


async def test_knowledge_items_extend_the_system_prompt(engine, store, fake_ai):
    node = {
        "id": "a",
        "type": "AI",
        "name": "Writer",
        "config": {
            "systemPrompt": "You write copy.",
            "userPrompt": "describe {{Input.topic}}",
            "knowledgeItems": [
                {"name": "Style guide", "content": "Use a {{Input.tone}} tone"},
                {"name": "Empty", "content": "   "},
            ],
        },
    }
    result = await _run(
        engine,
        store,
        [_input([{"name": "topic"}, {"name": "tone"}]), node, _output()],
        _edges(("in", "a"), ("a", "out")),
        input={"topic": "tea", "tone": "playful"},
    )
    assert result.status == ExecutionStatus.COMPLETED
    system = fake_ai.calls[0]["messages"][0]
    assert system["role"] == "system"
    assert system["content"].startswith("You write copy.\n\nReference knowledge:")
    assert "## Style guide\nUse a playful tone" in system["content"]
    assert "Empty" not in system["content"]


async def test_process_image_modality_calls_image_generation(engine, store, fake_ai):
    node = {
        "id": "a",
        "type": "AI",
        "name": "Poster",
        "config": {"userPrompt": "poster for {{Input.topic}}", "modality": "image-gen", "imageCount": 2},
    }
    result = await _run(
        engine,
        store,
        [_input([{"name": "topic"}]), node, _output()],
        _edges(("in", "a"), ("a", "out")),
        input={"topic": "tea"},
    )
    data = _by_id(result)["a"].data
    assert result.status == ExecutionStatus.COMPLETED
    assert data["modality"] == "image-gen"
    assert data["imageUrls"] == ["https://images.test/0.png", "https://images.test/1.png"]
    assert fake_ai.calls[0]["prompt"] == "poster for tea"
    assert result.total_tokens == 0


async def test_media_nodes_generate_image_video_and_audio(engine, store, fake_ai):
    result = await _run(
        engine,
        store,
        [
            _input([{"name": "topic"}]),
            {"id": "img", "type": "IMAGE", "name": "Picture", "config": {"prompt": "{{Input.topic}} poster"}},
            {"id": "vid", "type": "VIDEO", "name": "Clip", "config": {"prompt": "{{Input.topic}} clip", "duration": 8}},
            {"id": "aud", "type": "AUDIO", "name": "Voice", "config": {"prompt": "about {{Input.topic}}", "voice": "nova"}},
        ],
        _edges(("in", "img"), ("in", "vid"), ("in", "aud")),
        input={"topic": "tea"},
    )
    assert result.status == ExecutionStatus.COMPLETED
    assert result.output["Picture"]["result"] == "https://images.test/0.png"
    assert result.output["Clip"]["taskId"] == "video-task-1"
    assert result.output["Clip"]["result"] == "video-task-1"
    assert result.output["Voice"]["voice"] == "nova"

    files = store.list_output_files(result.execution_id)
    assert [f.file_name for f in files] == ["aud-speech.mp3"]
    assert files[0].mime_type == "audio/mpeg"
    with open(files[0].path, "rb") as handle:
        assert handle.read() == b"ID3-fake-audio"


async def test_swept_execution_is_not_restarted(engine, store, runtime, fake_ai):
    workflow = store.create_workflow(TENANT, "swept", {"nodes": [_input([]), _ai("a", "A", "x"), _output()], "edges": _edges(("in", "a"), ("a", "out"))})
    execution = engine.create_execution(workflow.id, TENANT, USER, {})
    store.transition_execution(execution.id, ExecutionStatus.FAILED, error="Execution interrupted by service restart")
    subscription = runtime.events.subscribe(execution.id)
    consumer = asyncio.create_task(_collect(subscription))

    result = await engine.execute_workflow(workflow.id, TENANT, USER, {}, execution_id=execution.id)
    events = await asyncio.wait_for(consumer, timeout=5)

    assert result.status == ExecutionStatus.FAILED
    assert result.error == "Execution interrupted by service restart"
    assert fake_ai.calls == []
    assert [event.type.value for event in events] == ["execution_error"]


async def test_run_reports_status_stored_by_a_concurrent_sweep(engine, store, runtime, http_handler):
    workflow = store.create_workflow(
        TENANT, "raced", {"nodes": [_input([]), _http("h", "https://api.test/ok"), _output()], "edges": _edges(("in", "h"), ("h", "out"))}
    )
    execution = engine.create_execution(workflow.id, TENANT, USER, {})

    def sweep_then_answer(request):
        store.transition_execution(execution.id, ExecutionStatus.FAILED, error="Execution interrupted by service restart")
        return httpx.Response(200, json={"ok": True})

    http_handler.handler = sweep_then_answer
    subscription = runtime.events.subscribe(execution.id)
    consumer = asyncio.create_task(_collect(subscription))

    result = await engine.execute_workflow(workflow.id, TENANT, USER, {}, execution_id=execution.id)
    events = await asyncio.wait_for(consumer, timeout=5)

    assert result.status == ExecutionStatus.FAILED
    assert result.error == "Execution interrupted by service restart"
    assert events[-1].type.value == "execution_error"
    assert store.get_execution(execution.id, TENANT).error == "Execution interrupted by service restart"


async def _collect(subscription):
    return [event async for event in subscription]
