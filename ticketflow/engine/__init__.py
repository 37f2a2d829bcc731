"""Workflow Engine - Transition engine for ticket workflows"""
from .condition_evaluator import ConditionEvaluator
from .definition_store import DefinitionStore
from .history_recorder import HistoryRecorder
from .script_sandbox import ScriptSandbox
from .template_resolver import TemplateContext

__all__ = [
    "ConditionEvaluator",
    "DefinitionStore",
    "HistoryRecorder",
    "ScriptSandbox",
    "TemplateContext",
]
