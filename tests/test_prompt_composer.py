"""Tests for system prompt composition and style classification."""

from sage_agent.agent.prompt import (
    PromptBlock,
    StyleProfile,
    budget_system_prompt,
    classify_style,
    compose_system_prompt,
    render_prompt_blocks,
)


def test_default_prompt_renders_blocks_by_priority():
    prompt = compose_system_prompt()
    assert prompt.startswith("You are Sage")
    assert prompt.index("## Safety & Tools") < prompt.index("## Humor Policy")


def test_style_and_tool_blocks_are_included():
    specs = [
        {
            "type": "function",
            "function": {"name": "join_voice_channel", "description": "Join voice.", "parameters": {}},
        }
    ]
    prompt = compose_system_prompt(style=StyleProfile(verbosity="low"), tool_specs=specs)
    assert "## Style Hint" in prompt
    assert "- Verbosity: low" in prompt
    assert "## Actions" in prompt
    assert "- join_voice_channel: Join voice." in prompt
    assert '"type": "tool_calls"' in prompt


def test_tight_budget_keeps_only_essential_blocks():
    prompt = compose_system_prompt(style=StyleProfile(), max_tokens=1)
    assert "You are Sage" in prompt
    assert "## Safety & Tools" in prompt
    assert "## Humor Policy" not in prompt
    assert "## Style Hint" not in prompt


def test_budget_drops_lowest_priority_first():
    blocks = [
        PromptBlock(id="a", title="A", content="a" * 40, priority=10),
        PromptBlock(id="b", title="B", content="b" * 40, priority=20),
        PromptBlock(id="c", title="C", content="c" * 40, priority=30, essential=True),
    ]
    # Each block costs 10 + 4 tokens.
    kept = budget_system_prompt(blocks, max_tokens=28)
    assert [b.id for b in kept] == ["b", "c"]


def test_render_orders_ties_by_title():
    blocks = [
        PromptBlock(id="z", title="Zeta", content="z", priority=5),
        PromptBlock(id="a", title="Alpha", content="a", priority=5),
        PromptBlock(id="top", title="", content="top", priority=9),
    ]
    assert render_prompt_blocks(blocks) == "top\n\n## Alpha\na\n\n## Zeta\nz"


def test_classify_style_detects_formal_detailed_requests():
    style = classify_style("Could you please explain this step-by-step for me")
    assert style.verbosity == "high"
    assert style.formality == "high"


def test_classify_style_detects_casual_humor():
    style = classify_style("yo tell me a funny story about my day")
    assert style.humor == "high"
    assert style.formality == "low"


def test_classify_style_serious_and_direct():
    style = classify_style("serious question, just give me the code for a binary search")
    assert style.humor == "none"
    assert style.directness == "high"


def test_short_messages_default_to_low_verbosity():
    assert classify_style("hi there").verbosity == "low"
    assert classify_style("what should I cook for dinner tonight").verbosity == "medium"
