from agentcrew.generators.base import TextGenerator, parse_json_object
from agentcrew.generators.openai_sdk import OpenAIGenerator
from agentcrew.generators.resilient import ResilientGenerator, RetryPolicy
from agentcrew.generators.template import TemplateGenerator

__all__ = [
    "OpenAIGenerator",
    "ResilientGenerator",
    "RetryPolicy",
    "TemplateGenerator",
    "TextGenerator",
    "parse_json_object",
]
