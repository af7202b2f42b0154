"""
Article Pipeline - fan-out / fan-in over a local Ollama model

    outline ──> facts ──┐
       │                ├──> review
       └──────> draft ──┘

`facts` and `draft` run concurrently once `outline` succeeds; `review`
runs only after both have succeeded.

Usage:
    ollama pull qwen2.5:7b
    python examples/article_pipeline.py "river deltas"

Settings come from the environment or .env (TASKGRAPH_MAX_RETRIES,
TASKGRAPH_CALL_TIMEOUT, TASKGRAPH_MODEL, OLLAMA_BASE_URL, ...).
"""

import asyncio
import json
import sys

from dotenv import load_dotenv

from taskgraph import ExecutorConfig, Workflow, create_model_client, get_logger

# Load environment variables
load_dotenv()

logger = get_logger("examples.article")


def build_definition(topic: str):
    return {
        "outline": {
            "promptTemplate": (
                "Plan a short article about {topic}. "
                "Give it a title and three section headings."
            ),
            "input": {"topic": topic},
            "outputSchema": {
                "type": "object",
                "properties": {
                    "title": {"type": "string", "minLength": 1},
                    "sections": {
                        "type": "array",
                        "items": {"type": "string"},
                        "minItems": 3,
                        "maxItems": 3,
                    },
                },
                "required": ["title", "sections"],
            },
            "nextNodes": ["facts", "draft"],
        },
        "facts": {
            "promptTemplate": (
                "List five verifiable facts useful for an article titled "
                "\"{upstream[outline][title]}\"."
            ),
            "outputSchema": {
                "type": "object",
                "properties": {
                    "facts": {"type": "array", "items": {"type": "string"}, "minItems": 5},
                },
                "required": ["facts"],
            },
            "nextNodes": ["review"],
        },
        "draft": {
            "promptTemplate": (
                "Write one paragraph for each section of \"{upstream[outline][title]}\": "
                "{upstream[outline][sections]}"
            ),
            "outputSchema": {
                "type": "object",
                "properties": {
                    "paragraphs": {"type": "array", "items": {"type": "string"}, "minItems": 3},
                },
                "required": ["paragraphs"],
            },
            "nextNodes": ["review"],
            "maxRetries": 3,
        },
        "review": {
            "promptTemplate": (
                "Check these paragraphs against the facts and score the draft.\n"
                "Paragraphs: {upstream[draft][paragraphs]}\n"
                "Facts: {upstream[facts][facts]}"
            ),
            "outputSchema": {
                "type": "object",
                "properties": {
                    "score": {"type": "integer", "minimum": 1, "maximum": 10},
                    "issues": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["score", "issues"],
            },
        },
    }


async def main(topic: str):
    workflow = Workflow(
        name="article",
        graph=build_definition(topic),
        client=create_model_client(),
        config=ExecutorConfig.from_env(),
    )

    print(workflow.visualize())
    print()

    report = await workflow.invoke()

    print(report.summary())
    print()
    if "review" in report.succeeded():
        print("Review:")
        print(json.dumps(report.nodes["review"].result, indent=2))

    metrics = workflow.get_metrics()
    logger.info(
        f"[article] {metrics['nodes_recorded']} nodes, "
        f"{metrics['total_attempts']} model calls, "
        f"{metrics['total_duration_ms']:.0f}ms"
    )
    return report


if __name__ == "__main__":
    topic = sys.argv[1] if len(sys.argv) > 1 else "river deltas"
    asyncio.run(main(topic))
