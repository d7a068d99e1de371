"""执行计划构建：把模板步骤原型与抽取参数合成为运行时 TaskStep 列表。"""

from __future__ import annotations

from typing import Any

from comet_orchestrator.domain.models import TaskStep, TaskTemplate

# 工具名 -> [(步骤参数名, 候选抽取参数名...)]；步骤模板中已显式给出的参数不会被覆盖。
_PARAM_BINDINGS: dict[str, tuple[tuple[str, tuple[str, ...]], ...]] = {
    "comet_ask": (("prompt", ("prompt",)),),
    "comet_navigate": (("url", ("url",)),),
    "comet_type": (("text", ("query", "prompt_command")),),
    "comet_get_content": (("extraction_hint", ("extraction_target",)),),
    "comet_find_elements": (("selector", ("target",)),),
    "comet_click": (("selector", ("target",)),),
}

# 这些步骤参数一旦存在，对应抽取值即视为已被步骤模板覆盖。
_BLOCKED_BY: dict[str, str] = {"extraction_hint": "selector"}


def build_task_steps(template: TaskTemplate, extracted: dict[str, Any]) -> list[TaskStep]:
    """为每个模板步骤生成独立的运行时实例，可选标记在此处随步骤固化。"""
    steps: list[TaskStep] = []
    for proto in template.steps:
        params = dict(proto.param_template)
        for param_name, sources in _PARAM_BINDINGS.get(proto.tool_name, ()):
            if params.get(param_name) or params.get(_BLOCKED_BY.get(param_name, "")):
                continue
            value = next((extracted[key] for key in sources if extracted.get(key)), None)
            if value is not None:
                params[param_name] = value
        steps.append(
            TaskStep(
                tool_name=proto.tool_name,
                provider_id=proto.provider_id,
                params=params,
                optional=proto.optional,
                description=proto.description,
            )
        )
    return steps
