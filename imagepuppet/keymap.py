"""Keyboard mapping shared by every provider.

Each canonical key carries its QEMU ``sendkey`` name, its PC set-1 make code
(VirtualBox ``keyboardputscancode``) and its Linux evdev code (libvirt
``sendKey`` with the ``linux`` codeset). Text is typed character by
character through ``char_to_key``.
"""

from __future__ import annotations

import unicodedata
from dataclasses import dataclass
from typing import Dict, Iterable, List, Sequence, Tuple

from imagepuppet.exceptions import ConfigurationError


@dataclass(frozen=True)
class KeyCode:
    name: str
    qemu: str
    scancode: int
    linux: int
    extended: bool = False

    def make(self) -> List[str]:
        codes = [f"{self.scancode:02x}"]
        return ["e0"] + codes if self.extended else codes

    def release(self) -> List[str]:
        codes = [f"{self.scancode | 0x80:02x}"]
        return ["e0"] + codes if self.extended else codes


def _basic(name: str, qemu: str, code: int) -> KeyCode:
    # Set-1 make codes and evdev codes coincide for the main block.
    return KeyCode(name=name, qemu=qemu, scancode=code, linux=code)


def _ext(name: str, qemu: str, code: int, linux: int) -> KeyCode:
    return KeyCode(name=name, qemu=qemu, scancode=code, linux=linux, extended=True)


_KEYS: List[KeyCode] = [
    _basic("esc", "esc", 0x01),
    _basic("minus", "minus", 0x0C),
    _basic("equal", "equal", 0x0D),
    _basic("backspace", "backspace", 0x0E),
    _basic("tab", "tab", 0x0F),
    _basic("bracket_left", "bracket_left", 0x1A),
    _basic("bracket_right", "bracket_right", 0x1B),
    _basic("enter", "ret", 0x1C),
    _basic("ctrl", "ctrl", 0x1D),
    _basic("semicolon", "semicolon", 0x27),
    _basic("apostrophe", "apostrophe", 0x28),
    _basic("grave", "grave_accent", 0x29),
    _basic("shift", "shift", 0x2A),
    _basic("backslash", "backslash", 0x2B),
    _basic("comma", "comma", 0x33),
    _basic("dot", "dot", 0x34),
    _basic("slash", "slash", 0x35),
    _basic("shift_r", "shift_r", 0x36),
    _basic("alt", "alt", 0x38),
    _basic("space", "spc", 0x39),
    _basic("capslock", "caps_lock", 0x3A),
    _basic("f11", "f11", 0x57),
    _basic("f12", "f12", 0x58),
    _ext("ctrl_r", "ctrl_r", 0x1D, 97),
    _ext("alt_r", "alt_r", 0x38, 100),
    _ext("home", "home", 0x47, 102),
    _ext("up", "up", 0x48, 103),
    _ext("pageup", "pgup", 0x49, 104),
    _ext("left", "left", 0x4B, 105),
    _ext("right", "right", 0x4D, 106),
    _ext("end", "end", 0x4F, 107),
    _ext("down", "down", 0x50, 108),
    _ext("pagedown", "pgdn", 0x51, 109),
    _ext("insert", "insert", 0x52, 110),
    _ext("delete", "delete", 0x53, 111),
    _ext("super", "meta_l", 0x5B, 125),
]

# Digits 1-9 then 0 sit on consecutive codes starting at 0x02.
for _offset, _digit in enumerate("1234567890"):
    _KEYS.append(_basic(_digit, _digit, 0x02 + _offset))

for _row, _start in (("qwertyuiop", 0x10), ("asdfghjkl", 0x1E), ("zxcvbnm", 0x2C)):
    for _offset, _letter in enumerate(_row):
        _KEYS.append(_basic(_letter, _letter, _start + _offset))

for _n in range(1, 11):
    _KEYS.append(_basic(f"f{_n}", f"f{_n}", 0x3A + _n))

KEYS: Dict[str, KeyCode] = {key.name: key for key in _KEYS}

ALIASES = {
    "return": "enter",
    "ret": "enter",
    "escape": "esc",
    "spc": "space",
    "del": "delete",
    "ins": "insert",
    "pgup": "pageup",
    "page_up": "pageup",
    "pgdn": "pagedown",
    "page_down": "pagedown",
    "bksp": "backspace",
    "control": "ctrl",
    "lctrl": "ctrl",
    "rctrl": "ctrl_r",
    "lshift": "shift",
    "rshift": "shift_r",
    "lalt": "alt",
    "ralt": "alt_r",
    "altgr": "alt_r",
    "meta": "super",
    "win": "super",
    "windows": "super",
    "cmd": "super",
    "caps_lock": "capslock",
    "period": "dot",
    "-": "minus",
    "=": "equal",
    "[": "bracket_left",
    "]": "bracket_right",
    ";": "semicolon",
    "'": "apostrophe",
    "`": "grave",
    "\\": "backslash",
    ",": "comma",
    ".": "dot",
    "/": "slash",
}

MODIFIERS = frozenset({"ctrl", "ctrl_r", "shift", "shift_r", "alt", "alt_r", "super"})

_UNSHIFTED = {
    " ": "space",
    "\n": "enter",
    "\t": "tab",
    "-": "minus",
    "=": "equal",
    "[": "bracket_left",
    "]": "bracket_right",
    ";": "semicolon",
    "'": "apostrophe",
    "`": "grave",
    "\\": "backslash",
    ",": "comma",
    ".": "dot",
    "/": "slash",
}

_SHIFTED = {
    "!": "1",
    "@": "2",
    "#": "3",
    "$": "4",
    "%": "5",
    "^": "6",
    "&": "7",
    "*": "8",
    "(": "9",
    ")": "0",
    "_": "minus",
    "+": "equal",
    "{": "bracket_left",
    "}": "bracket_right",
    ":": "semicolon",
    '"': "apostrophe",
    "~": "grave",
    "|": "backslash",
    "<": "comma",
    ">": "dot",
    "?": "slash",
}

_TYPOGRAPHIC = {
    "\u2018": "'",
    "\u2019": "'",
    "\u201c": '"',
    "\u201d": '"',
    "\u2013": "-",
    "\u2014": "-",
    "\u00a0": " ",
    "\r": "\n",
}


def resolve_key(name: str) -> KeyCode:
    """Return the key for a case-insensitive name or alias."""
    if len(name) == 1:
        normalized = name.lower()
    else:
        normalized = name.strip().lower().replace("-", "_")
    normalized = ALIASES.get(normalized, normalized)
    try:
        return KEYS[normalized]
    except KeyError:
        raise ConfigurationError(f"Unknown key name '{name}'") from None


def validate_key(name: str, modifier: bool = False) -> KeyCode:
    key = resolve_key(name)
    if modifier and key.name not in MODIFIERS:
        raise ConfigurationError(f"'{name}' cannot be used as a modifier")
    return key


def split_combo(combo: str) -> Tuple[str, Tuple[str, ...]]:
    """Split ``ctrl+alt+delete`` into ``("delete", ("ctrl", "alt"))``."""
    if combo == "+":
        return combo, ()
    parts = [part.strip() for part in combo.split("+")]
    if any(not part for part in parts):
        raise ConfigurationError(f"Malformed key combination '{combo}'")
    return parts[-1], tuple(parts[:-1])


def char_to_key(ch: str) -> Tuple[KeyCode, bool]:
    """Return ``(key, shift)`` needed to type a single character."""
    ch = _TYPOGRAPHIC.get(ch, ch)
    if ch in _UNSHIFTED:
        return KEYS[_UNSHIFTED[ch]], False
    if ch in _SHIFTED:
        return KEYS[_SHIFTED[ch]], True
    if ch.isascii() and ch.isalnum():
        return KEYS[ch.lower()], ch.isupper()
    # Accented letters fall back to their base character.
    decomposed = unicodedata.normalize("NFKD", ch)
    base = "".join(c for c in decomposed if not unicodedata.combining(c))
    if len(base) == 1 and base != ch:
        return char_to_key(base)
    raise ConfigurationError(f"No key mapping for character {ch!r} (U+{ord(ch):04X})")


def validate_text(text: str) -> None:
    for ch in text:
        char_to_key(ch)


def qemu_combo(key: str, modifiers: Sequence[str] = ()) -> str:
    """Render a combination as a QEMU ``sendkey`` argument, e.g. ``ctrl-alt-delete``."""
    names = [validate_key(mod, modifier=True).qemu for mod in modifiers]
    names.append(resolve_key(key).qemu)
    return "-".join(names)


def scancodes(key: str, modifiers: Sequence[str] = ()) -> List[str]:
    """Return the set-1 sequence that presses and releases a combination."""
    mods = [validate_key(mod, modifier=True) for mod in modifiers]
    target = resolve_key(key)
    codes: List[str] = []
    for mod in mods:
        codes.extend(mod.make())
    codes.extend(target.make())
    codes.extend(target.release())
    for mod in reversed(mods):
        codes.extend(mod.release())
    return codes


def text_scancodes(text: str) -> List[str]:
    codes: List[str] = []
    shift = KEYS["shift"]
    for ch in text:
        key, shifted = char_to_key(ch)
        if shifted:
            codes.extend(shift.make())
        codes.extend(key.make())
        codes.extend(key.release())
        if shifted:
            codes.extend(shift.release())
    return codes


def linux_codes(key: str, modifiers: Iterable[str] = ()) -> List[int]:
    """Return evdev codes for a combination, modifiers first."""
    codes = [validate_key(mod, modifier=True).linux for mod in modifiers]
    codes.append(resolve_key(key).linux)
    return codes
