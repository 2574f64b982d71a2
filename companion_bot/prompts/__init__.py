from .system import build_system_prompt, build_turns, build_user_context

__all__ = ["build_system_prompt", "build_turns", "build_user_context"]
