"""AI provider table: which env var carries the key and which model to default to."""

from __future__ import annotations

from typing import NamedTuple


class ProviderDef(NamedTuple):
    env_var: str
    default_model: str


PROVIDERS: dict[str, ProviderDef] = {
    "ANTHROPIC": ProviderDef("ANTHROPIC_API_KEY", "anthropic/claude-sonnet-4-5-20250929"),
    "OPENAI": ProviderDef("OPENAI_API_KEY", "openai/gpt-5.2"),
    "OPENAI_CODEX": ProviderDef("OPENAI_API_KEY", "openai-codex/gpt-5.2"),
    "OPENCODE": ProviderDef("OPENCODE_API_KEY", "opencode/claude-opus-4-5"),
    "GOOGLE": ProviderDef("GEMINI_API_KEY", "google/gemini-2.5-pro"),
    "GOOGLE_VERTEX": ProviderDef(
        "GOOGLE_APPLICATION_CREDENTIALS", "google-vertex/gemini-3-pro-preview"
    ),
    "ZAI": ProviderDef("ZAI_API_KEY", "zai/glm-4.7"),
    "VERCEL_AI_GATEWAY": ProviderDef(
        "VERCEL_AI_GATEWAY_API_KEY", "vercel-ai-gateway/anthropic/claude-opus-4.5"
    ),
    "XAI": ProviderDef("XAI_API_KEY", "xai/grok-4-1-fast-non-reasoning"),
    "GROQ": ProviderDef("GROQ_API_KEY", "groq/llama-3.3-70b-versatile"),
    "MISTRAL": ProviderDef("MISTRAL_API_KEY", "mistral/mistral-large-latest"),
    "DEEPSEEK": ProviderDef("DEEPSEEK_API_KEY", "deepseek/deepseek-chat"),
    "CEREBRAS": ProviderDef("CEREBRAS_API_KEY", "cerebras/qwen-3-32b"),
    "VENICE": ProviderDef("VENICE_API_KEY", "venice/llama-3.3-70b"),
    "MOONSHOT": ProviderDef("MOONSHOT_API_KEY", "moonshot/kimi-k2.5"),
    "KIMI_CODE": ProviderDef("MOONSHOT_API_KEY", "kimi-code/kimi-for-coding"),
    "MINIMAX": ProviderDef("MINIMAX_API_KEY", "minimax/MiniMax-M2.1"),
    "QWEN": ProviderDef("QWEN_API_KEY", "qwen-portal/coder-model"),
    "SYNTHETIC": ProviderDef("HUGGINGFACE_API_KEY", "synthetic/hf:MiniMaxAI/MiniMax-M2.1"),
    "TOGETHER": ProviderDef(
        "TOGETHER_API_KEY", "together/meta-llama/Llama-3.3-70B-Instruct-Turbo"
    ),
    "NVIDIA": ProviderDef("NVIDIA_API_KEY", "nvidia/llama-3.1-nemotron-70b-instruct"),
    "HUGGINGFACE": ProviderDef(
        "HUGGINGFACE_API_KEY", "huggingface/meta-llama/Llama-3.3-70B-Instruct"
    ),
    "OPENROUTER": ProviderDef("OPENROUTER_API_KEY", "openrouter/anthropic/claude-sonnet-4-5"),
    "GITHUB_COPILOT": ProviderDef("GITHUB_TOKEN", "github-copilot/gpt-4o"),
    "OLLAMA": ProviderDef("OLLAMA_HOST", "ollama/llama3.3"),
    "BEDROCK": ProviderDef("AWS_ACCESS_KEY_ID", "bedrock/anthropic.claude-sonnet-4-5-v1"),
}

_FALLBACK = PROVIDERS["ANTHROPIC"]


def get_provider_def(provider: str) -> ProviderDef:
    """Look up a provider; unknown ids fall back to Anthropic."""
    return PROVIDERS.get(provider.upper(), _FALLBACK)


def provider_env_var(provider: str) -> str:
    return get_provider_def(provider).env_var


def default_model(provider: str) -> str:
    return get_provider_def(provider).default_model
