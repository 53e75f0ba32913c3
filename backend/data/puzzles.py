"""
"Escape from the Aether Station": four puzzles, easy to hard.

Each answer predicate takes the raw text a player typed and returns a
bool. Predicates never raise; anything odd is simply a wrong answer.
"""
import re
from dataclasses import dataclass, field
from typing import Callable, List, Tuple


@dataclass(frozen=True)
class Puzzle:
    id: str
    title: str
    prompt: str
    answer: Callable[[str], bool] = field(repr=False)
    hints: Tuple[str, ...] = ()

    def check(self, candidate: str) -> bool:
        try:
            return bool(self.answer(candidate))
        except Exception:
            return False


# ── Normalizers ───────────────────────────────────────────────────────────────

def only_digits(s: str = "") -> str:
    return re.sub(r"\D+", "", str(s or ""))


def normalize_name(s: str = "") -> str:
    return re.sub(r"[^A-Z]", "", str(s or "").strip().upper())


def normalize_text(s: str = "") -> str:
    return str(s or "").strip().upper()


COLOR_ALIASES = {
    "R": "RED", "RED": "RED",
    "B": "BLUE", "BLUE": "BLUE",
    "Y": "YELLOW", "YEL": "YELLOW", "YELLOW": "YELLOW",
    "G": "GREEN", "GRN": "GREEN", "GREEN": "GREEN",
}


def normalize_color_sequence(s: str = "") -> List[str]:
    tokens = re.sub(r"[^A-Z]", " ", str(s or "").upper()).split()
    return [COLOR_ALIASES[t] for t in tokens if t in COLOR_ALIASES]


# ── Puzzles ───────────────────────────────────────────────────────────────────

# 2x + 5 = 9 -> x = 2
REACTOR_CALIBRATION = Puzzle(
    id="reactor-calibration",
    title="Reactor Calibration",
    prompt="\n".join([
        "AI-Zeta: Primary reactor cold-boot sequence stalled.",
        "You spot a grease-stained note taped to the reactor housing:",
        "\"The solution is in the value of x.\"",
        "",
        "Equation on the note:",
        "  2x + 5 = 9",
        "",
        "Enter the checksum: the value of x (digits only).",
    ]),
    answer=lambda txt: only_digits(txt) == "2",
    hints=(
        "Solve for x: subtract 5 from both sides, then divide by 2.",
        "x = (9 - 5) / 2 = 2. Enter just the number.",
    ),
)

COLOR_OVERRIDE = Puzzle(
    id="color-override",
    title="Color Override",
    prompt="\n".join([
        "AI-Zeta: Insert energy cells in the correct order to stabilize the core.",
        "Available cells: YELLOW, BLUE, RED, GREEN.",
        "",
        "Recovered rule fragments:",
        "- \"Blue feeds on Red's heat.\"",
        "- \"Yellow only shines after Blue.\"",
        "- \"Green follows sunlight but precedes night.\"",
        "",
        "Type the colors in order (letters or names). Examples:",
        "  Y G B R   |   RED BLUE YELLOW GREEN   |   RED->BLUE->YELLOW->GREEN",
    ]),
    answer=lambda txt: normalize_color_sequence(txt) == ["RED", "BLUE", "GREEN", "YELLOW"],
    hints=(
        "\"Blue feeds on Red's heat\": Red must come before Blue.",
        "\"Yellow only shines after Blue\": Blue before Yellow.",
        "Green sits between Blue and Yellow.",
        "Final order: RED, BLUE, GREEN, YELLOW.",
    ),
)

# VHFUHW shifted back by 3 -> SECRET
COMMS_DECRYPT = Puzzle(
    id="comms-decrypt",
    title="Comms Decrypt",
    prompt="\n".join([
        "AI-Zeta: Incoming transmission garbled. Caesar shift detected.",
        "",
        "Encrypted message: VHFUHW",
        "",
        "Directive: \"Shift all the dial back three clicks.\"",
        "Decode the message (Caesar shift back by 3) and enter the plain English word.",
    ]),
    answer=lambda txt: normalize_text(txt) == "SECRET",
    hints=(
        "Shift each letter back three positions (V->S, H->E, F->C...).",
        "After shifting all letters, you get a common English word used for confidential info.",
    ),
)

DATA_CORE_CORRUPTION = Puzzle(
    id="data-core-corruption",
    title="Data Core Corruption",
    prompt="\n".join([
        "AI-Zeta: Five crew accessed the mainframe before the data corruption:",
        "- Ishim (Navigator)",
        "- Kora (Chef)",
        "- Lin (Mechanic)",
        "- Silva (Security)",
        "- Noor (Technician)",
        "",
        "Clues:",
        "5) Noor was wearing sterile gloves in the lab.",
        "4) Silva was guarding the airlock all shift.",
        "3) Lin wears anti-static gloves when near electronics.",
        "2) Kora had just finished cooking a meal.",
        "1) The corrupted logs were typed with greasy fingerprints.",
        "",
        "Who corrupted the data core? Type the name.",
        "Tip: if you're stuck, ask AI-Zeta for a hint.",
    ]),
    answer=lambda txt: normalize_name(txt) == "KORA",
    hints=(
        "Sterile gloves leave no grease, likely not Noor.",
        "Who was on guard duty all shift? Cross them out.",
        "Anti-static gloves prevent direct fingerprints, remove that person.",
        "Who likely had greasy hands from cooking?",
        "Greasy fingerprints after cooking: Kora.",
    ),
)

PUZZLES: Tuple[Puzzle, ...] = (
    REACTOR_CALIBRATION,
    COLOR_OVERRIDE,
    COMMS_DECRYPT,
    DATA_CORE_CORRUPTION,
)
