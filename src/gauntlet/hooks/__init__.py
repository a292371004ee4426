from gauntlet.hooks.stop import (
    HookInput,
    HookResponse,
    InvalidHookInputError,
    StopHookResolver,
    build_remediation,
    parse_hook_input,
)

__all__ = [
    "HookInput",
    "HookResponse",
    "InvalidHookInputError",
    "StopHookResolver",
    "build_remediation",
    "parse_hook_input",
]
