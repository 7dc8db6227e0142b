"""Terminal output cleanup: escape stripping and TUI-chrome filtering.

Remote coding CLIs render a live terminal UI (spinners, status bars,
permission hints) interleaved with their real output. This is a semantic
relay, not a terminal emulator, so that chrome is recognised line by line
and dropped.
"""

import re
from dataclasses import dataclass
from typing import Optional

# Regex to match ANSI escape codes (comprehensive)
ANSI_ESCAPE_RE = re.compile(
    r'\x1b\[[0-?]*[ -/]*[@-~]|'            # CSI sequences (private modes like ?2026h, >4;2m, <u)
    r'\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)|'  # OSC sequences, BEL or ST terminated
    r'\x1b[PX^_][^\x1b]*\x1b\\|'           # DCS, SOS, PM, APC sequences
    r'\x1b[\(\)][AB012]|'                  # Character set selection
    r'\x1b[=>]|'                           # Keypad modes
    r'\x1b[78]|'                           # Save/restore cursor
    r'\x1b[DMEHc]'                         # Various single-char commands
)

# Anything still starting with ESC after the first pass
LEFTOVER_ESCAPE_RE = re.compile(r'\x1b[^a-zA-Z\x1b\n]*[a-zA-Z]')

# Control bytes except tab, newline and carriage return
CONTROL_CHARS_RE = re.compile(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]')

BLANK_RUN_RE = re.compile(r'\n{3,}')

# An escape sequence cut off at the end of a fragment
INCOMPLETE_ESCAPE_RE = re.compile(
    r'\x1b(?:\[[0-?]*[ -/]*|\][^\x07\x1b]*|[PX^_][^\x1b]*\x1b?|[\(\)])?\Z'
)
MAX_ESCAPE_CARRY = 256

BOX_CHARS_RE = re.compile(r'[╭╮╰╯│─┌┐└┘├┤┬┴┼━┃╋▀▁▂▃▄▅▆▇█▉▊▋▌▍▎▏▐░▒▓▙▟▛▜▝▞▘▗▖]')

# Spinner text leaked onto the end of a real line, e.g. "Build ok ✻ Reading…"
TRAILING_SPINNER_RE = re.compile(r'[\s❯✢✻✶✽✳·⏺]+[A-Z][a-z]+…[\s❯]*')
TRAILING_PROMPT_RE = re.compile(r'\s*❯\s*$')


def strip_ansi(text: str) -> str:
    """Remove ANSI escape codes and control characters from text.

    Newlines, tabs and carriage returns are kept; runs of 3+ newlines
    collapse to a single blank line. No trimming.
    """
    # First pass: known sequence shapes
    text = ANSI_ESCAPE_RE.sub('', text)
    # Second pass: remove any remaining escape sequences we might have missed
    text = LEFTOVER_ESCAPE_RE.sub('', text)
    text = CONTROL_CHARS_RE.sub('', text)
    return BLANK_RUN_RE.sub('\n\n', text)


def split_incomplete_escape(text: str) -> tuple[str, str]:
    """Split ``text`` into (complete, carry) where carry is a trailing partial escape sequence."""
    match = INCOMPLETE_ESCAPE_RE.search(text)
    if not match or len(text) - match.start() > MAX_ESCAPE_CARRY:
        return text, ""
    return text[:match.start()], text[match.start():]


@dataclass(frozen=True)
class NoiseRule:
    """One kind of TUI chrome, recognised on a single box-stripped line."""
    name: str
    pattern: re.Pattern
    description: str

    def matches(self, line: str) -> bool:
        return self.pattern.search(line) is not None


# Checked in order; the first match drops the line.
NOISE_RULES = [
    NoiseRule(
        "spinner_glyphs",
        re.compile(r'^[✻✶✢✽✳⏺·*●|>\s]+$'),
        "Line made only of spinner/progress glyphs",
    ),
    NoiseRule(
        "thinking_status",
        re.compile(
            r'^(?:[✻✶✢✽✳⏺❯·*●]\s*)*\(?'
            r'(?:thinking|thought for|ought for|hought for|hinking|inking|nking|king\b|\d+s\))',
            re.IGNORECASE,
        ),
        "'(thinking)' / 'thought for 3s' status, including tails cut by escape splitting",
    ),
    NoiseRule(
        "timing_tail",
        re.compile(r'^(?:for\s*)?\d+s\)\s*$|^[a-z]{1,6}king\)\s*$|^[a-z]{1,4}ing\)\s*$'),
        "Leftover timing fragment such as '2s)' or 'nking)'",
    ),
    NoiseRule(
        "spinner_word",
        re.compile(r'^[✻✶✢✽✳⏺❯⎿·*●\s]*[A-Z][a-z]+…'),
        "Spinner: optional icons, then a capitalised word and U+2026 ('✻ Pondering…')",
    ),
    NoiseRule(
        "tool_marker",
        re.compile(r'^[⏺⎿]|⎿'),
        "Tool call (⏺) or indented tool output (⎿) marker",
    ),
    NoiseRule(
        "tool_display",
        re.compile(
            r'^(?:Read|Write|Edit|List|Search|Run|Bash|Glob|Grep|Todo|Web)\s+\d*\s*\w*\s*…',
            re.IGNORECASE,
        ),
        "Tool usage summary such as 'Read 3 files…'",
    ),
    NoiseRule(
        "tool_status_word",
        re.compile(r'^(?:Wait|Run(?:ning)?|Read(?:ing)?|Writ(?:ing|e)|List(?:ing)?|Search(?:ing)?)\s*$'),
        "A tool status word left alone on its line",
    ),
    NoiseRule(
        "shell_prompt",
        re.compile(r'^~.*?❯|^❯\s*$'),
        "Prompt line '~/path ❯ ...' or a lone prompt glyph",
    ),
    NoiseRule(
        "uptime_status_bar",
        re.compile(r'\(\d+d\s+\d+h'),
        "Status bar carrying session uptime '(3d 4h 12m)'",
    ),
    NoiseRule(
        "prompt_chain",
        re.compile(r'~/\S+\s*[❯>]\s*\d+\s*[❯>]'),
        "Status bar of chained prompt segments '~/repo ❯ 2 ❯'",
    ),
    NoiseRule(
        "permission_hint",
        re.compile(
            r'bypass permissions|bypasspermission|shift\+tab to cycle|shift\+tabtocycle|'
            r'esc to interrupt|esctointerrupt|settings issue|/doctor for details',
            re.IGNORECASE,
        ),
        "Permission-mode and keybinding hints, spaced or squashed",
    ),
    NoiseRule(
        "mode_indicator",
        re.compile(r'⏵'),
        "Permission mode indicator glyph",
    ),
    NoiseRule(
        "startup_banner",
        re.compile(
            r'Tips for getting started|Tipsforgettingstarted|Welcome back|Welcomeback|'
            r'Run /init to create|/resume for more|/statusline|Claude in Chrome enabled|/chrome|'
            r'Plugin updated|Restart to apply|/ide fr|Found \d+ settings issue',
            re.IGNORECASE,
        ),
        "Startup welcome panel and tips",
    ),
    NoiseRule(
        "version_banner",
        re.compile(
            r'ClaudeCode\s*v?\d|Claude Code v\d|Recentactivity|Recent activity|'
            r'Norecentactivity|No recent activity',
            re.IGNORECASE,
        ),
        "Version header and recent-activity panel",
    ),
    NoiseRule(
        "model_banner",
        re.compile(r'Sonnet\s*\d.*ClaudeAPI|ClaudeAPI.*Sonnet|claude-sonnet|claude-haiku|claude-opus', re.IGNORECASE),
        "Model / API banner",
    ),
    NoiseRule(
        "multi_spinner",
        re.compile(r'[A-Z][a-z]+….*[A-Z][a-z]+…'),
        "Two or more spinners on one line (pure status bar)",
    ),
    NoiseRule(
        "ctrl_hint",
        re.compile(
            r'^ctrl\+[a-z] to |ctrl\+[a-z]to[a-z]|ctrl\+o\s*to\s*expand|ctrl\+oto\s*expand|\(ctrl\+o\)',
            re.IGNORECASE,
        ),
        "Ctrl-key hints such as 'ctrl+o to expand'",
    ),
    NoiseRule(
        "token_stats",
        re.compile(r'^\d+s\s*·\s*↓?\d+\s*tokens', re.IGNORECASE),
        "Timing/token stats '47s · ↓193 tokens'",
    ),
    NoiseRule(
        "empty_prompt",
        re.compile(r'^>\s*$'),
        "Bare '>' input prompt",
    ),
]


def matching_noise_rule(line: str) -> Optional[NoiseRule]:
    """Return the first rule that classifies ``line`` as chrome, if any."""
    stripped = BOX_CHARS_RE.sub('', line).strip()
    for rule in NOISE_RULES:
        if rule.matches(stripped):
            return rule
    return None


def clean_line(line: str) -> str:
    """Return the meaningful part of one line, or "" if it is all chrome."""
    stripped = BOX_CHARS_RE.sub('', line).strip()
    if not stripped:
        return ""
    for rule in NOISE_RULES:
        if rule.matches(stripped):
            return ""
    stripped = TRAILING_SPINNER_RE.sub('', stripped).strip()
    return TRAILING_PROMPT_RE.sub('', stripped).strip()


def filter_tui_noise(text: str) -> str:
    """Drop TUI chrome lines and trailing spinner fragments.

    An all-noise input yields "" which callers treat as nothing to emit.
    """
    kept = [cleaned for cleaned in (clean_line(line) for line in text.split('\n')) if cleaned]
    return BLANK_RUN_RE.sub('\n\n', '\n'.join(kept)).strip()


def sanitize_output(fragment: str) -> str:
    """Both stages: escape stripping then noise filtering."""
    return filter_tui_noise(strip_ansi(fragment))
