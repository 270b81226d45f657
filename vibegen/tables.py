from __future__ import annotations

import re
from functools import lru_cache
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

DEFAULT_KEY = "_default"

_WS_RE = re.compile(r"\s+")


def normalize_key(value: Optional[str]) -> str:
    """Lowercase, trim and collapse inner whitespace so lookups are forgiving."""
    return _WS_RE.sub(" ", str(value or "")).strip().lower()


def resolve(
    table: Mapping[str, Any],
    category: Optional[str],
    subcategory: Optional[str] = None,
) -> Tuple[str, str]:
    """Return (key, step) for the first hit in the fallback chain.

    The chain is, in order:
    - exact:    "<category>.<subcategory>"
    - partial:  "<category>.<first word of subcategory>", then any
                "<category>.<x>" key where x and the subcategory contain
                one another
    - category: "<category>"
    - default:  "_default"

    Raises KeyError when the table has no "_default" entry and nothing matched.
    """
    cat = normalize_key(category)
    sub = normalize_key(subcategory)
    if cat and sub:
        exact = f"{cat}.{sub}"
        if exact in table:
            return exact, "exact"
        first = f"{cat}.{sub.split(' ')[0]}"
        if first in table:
            return first, "partial"
        prefix = f"{cat}."
        for key in table:
            if not key.startswith(prefix):
                continue
            tail = key[len(prefix):]
            if tail and (tail in sub or sub in tail):
                return key, "partial"
    if cat and cat in table:
        return cat, "category"
    if DEFAULT_KEY in table:
        return DEFAULT_KEY, "default"
    raise KeyError(f"no entry for {cat!r}.{sub!r} and no default")


def lookup(table: Mapping[str, Any], category: Optional[str], subcategory: Optional[str] = None) -> Any:
    key, _ = resolve(table, category, subcategory)
    return table[key]


# ---------------------------------------------------------------------------
# Lanes content tables

TONES: Tuple[str, ...] = (
    "Humorous",
    "Savage",
    "Sentimental",
    "Nostalgic",
    "Romantic",
    "Inspirational",
    "Playful",
    "Serious",
)

SUBCATEGORIES_BY_CATEGORY: Dict[str, List[str]] = {
    "Celebrations": ["Birthday Party", "Wedding", "Graduation", "Anniversary"],
    "Sports": ["Hockey", "Football", "Basketball", "Soccer"],
    "Daily Life": ["Work", "Work Commute", "Home", "Travel", "Food"],
    "Vibes & Punchlines": ["Funny", "Motivational", "Sarcastic"],
    "Pop Culture": ["Celebrities", "Movies", "Music", "TV Shows"],
}

# Concrete nouns only: they show up in the objects lane, so no person words
# and no style words.
ANCHORS: Dict[str, List[str]] = {
    "celebrations.birthday": ["cake", "candles", "balloons", "confetti", "party hats", "gifts"],
    "celebrations.wedding": ["rings", "bouquet", "champagne flutes", "tiered cake", "dance floor"],
    "celebrations.graduation": ["caps", "diploma", "tassel", "podium", "stage steps"],
    "celebrations.anniversary": ["candles", "rose petals", "champagne", "ring box", "dinner table"],
    "celebrations": ["balloons", "confetti", "streamers", "cake"],
    "sports.hockey": ["ice rink", "stick", "puck", "goal net", "helmets", "locker room"],
    "sports.basketball": ["indoor court", "hoop", "net", "sneakers", "scoreboard", "bench"],
    "sports.football": ["end zone", "helmet", "goal posts", "turf", "scoreboard"],
    "sports.soccer": ["pitch", "ball", "goal net", "cleats", "corner flag"],
    "sports": ["scoreboard", "jersey", "bench", "stadium lights"],
    "daily life.work commute": ["train", "bus", "subway", "traffic", "stoplight", "coffee", "headphones", "platform"],
    "daily life.work": ["laptop", "coffee", "sticky notes", "desk chair", "inbox"],
    "daily life.home": ["couch", "laundry pile", "remote", "kitchen sink", "house plants"],
    "daily life.travel": ["suitcase", "boarding pass", "airport gate", "passport", "window seat"],
    "daily life.food": ["frying pan", "takeout boxes", "cutting board", "spice rack", "oven mitt"],
    "daily life": ["coffee", "phone", "bag", "window light"],
    "vibes & punchlines": ["coffee mug", "sunglasses", "sticky notes", "neon glow"],
    "pop culture.movies": ["popcorn", "film reel", "theater seats", "ticket stub"],
    "pop culture.music": ["microphone", "vinyl record", "headphones", "stage lights"],
    "pop culture.tv shows": ["remote", "couch", "snack bowl", "glowing screen"],
    "pop culture": ["red carpet", "spotlight", "microphone", "popcorn"],
    DEFAULT_KEY: ["subject", "background", "props"],
}

GENERIC_NEGATIVE = "no watermarks, no logos, no extra text"

NEGATIVES: Dict[str, str] = {
    "celebrations": "no background lettering, no banners with words, no signage, no extra text",
    "sports": "no laptops, no desks, no coffee mugs, no office settings, no signage text",
    "daily life": "no party props, no balloons, no confetti, no sports gear, no signage text",
    "vibes & punchlines": "no branded items, no corporate logos",
    "pop culture": "no trademarked logos, no stock photo looks",
    DEFAULT_KEY: "no watermarks, no logos, no misspellings, no extra text",
}

# Each phrase starts with an inflected verb from ACTION_VERBS.
SOLO_ACTIONS: Dict[str, str] = {
    "celebrations.birthday": "blowing out candles with smoke curling up",
    "celebrations.wedding": "raising a glass mid-toast",
    "celebrations.graduation": "throwing a cap high into the air",
    "celebrations.anniversary": "holding a single rose across the table",
    "celebrations": "raising a glass with a big grin",
    "sports.hockey": "skating into a hard stop with ice spray",
    "sports.basketball": "jumping for a jump shot mid-air",
    "sports.football": "throwing a tight spiral downfield",
    "sports.soccer": "kicking the ball toward the top corner",
    "sports": "running full speed with visible effort",
    "daily life.work commute": "walking with coffee through the station",
    "daily life.work": "holding a coffee while typing fast",
    "daily life.travel": "walking a rolling suitcase through the terminal",
    "daily life.food": "flipping food in a pan with steam rising",
    "daily life": "walking with coffee in hand",
    "pop culture.music": "singing into the microphone under the lights",
    "pop culture": "holding popcorn mid-laugh",
    DEFAULT_KEY: "holding the key props mid-motion",
}

CLICHES: Tuple[str, ...] = (
    "laughter is the best medicine",
    "timing is everything",
    "finds you when you least expect it",
    "truth hurts",
    "change everything",
    "memories shape our future",
    "run deeper than logic",
    "age is just a number",
    "another trip around the sun",
    "living my best life",
)

TONE_INSTRUCTIONS: Dict[str, str] = {
    "humorous": "Use light puns and exaggeration. Keep it fun and accessible.",
    "savage": "Bold wit and roasts. Roast behavior, never identity. Push boundaries but stay clever.",
    "sentimental": "Heartfelt and warm. Focus on emotional connections.",
    "nostalgic": "Wistful, retro callbacks. Reference past eras fondly.",
    "romantic": "Affectionate and dreamy. Focus on love and connection.",
    "inspirational": "Uplifting and motivational. Encourage and empower.",
    "playful": "Cheeky and mischievous. Light teasing and fun.",
    "serious": "Factual and respectful. Maintain dignity and accuracy.",
}

DEFAULT_TONE_INSTRUCTION = "Maintain appropriate tone for the context."


def tone_instruction(tone: Optional[str]) -> str:
    return TONE_INSTRUCTIONS.get(normalize_key(tone), DEFAULT_TONE_INSTRUCTION)


# ---------------------------------------------------------------------------
# Text layout library

DEFAULT_LAYOUT_ID = "negativeSpace"

LAYOUT_SPECS: Dict[str, Dict[str, Any]] = {
    "negativeSpace": {
        "type": "negativeSpace",
        "rules": "Find largest empty area; never overlap subject",
        "zones": [],
    },
    "memeTopBottom": {
        "type": "memeTopBottom",
        "zones": [
            {"pos": "top", "height": "18%", "align": "center", "caps": True, "stroke": "2px black"},
            {"pos": "bottom", "height": "18%", "align": "center", "caps": True, "stroke": "2px black"},
        ],
    },
    "lowerThird": {
        "type": "lowerThirdBanner",
        "rules": "Solid/blur bar at bottom; opacity 70-80%; align left",
    },
    "sideBarLeft": {
        "type": "sideBarLeft",
        "rules": "Vertical panel 28% width; white text; dark overlay",
    },
    "badgeSticker": {
        "type": "badgeStickerCallout",
        "rules": "Circular badge; top-right corner; high contrast",
    },
    "subtleCaption": {
        "type": "subtleCaption",
        "rules": "Small caption at bottom; never cover faces",
    },
}


def layout_spec(layout_id: Optional[str]) -> Dict[str, Any]:
    """Exact id, then case-insensitive id, then the negative-space default."""
    if layout_id in LAYOUT_SPECS:
        return LAYOUT_SPECS[layout_id]
    wanted = normalize_key(layout_id).replace(" ", "")
    for key, spec in LAYOUT_SPECS.items():
        if key.lower() == wanted:
            return spec
    return LAYOUT_SPECS[DEFAULT_LAYOUT_ID]


# ---------------------------------------------------------------------------
# Visual lane vocabularies
#
# Word lists are heuristics matched on whole words. They are not a semantic
# parser: phrasing outside these lists will slip through or be rejected.

PERSON_WORDS: Dict[str, FrozenSet[str]] = {
    DEFAULT_KEY: frozenset({
        "person", "persons", "people", "man", "men", "woman", "women", "guy", "guys",
        "girl", "girls", "boy", "boys", "kid", "kids", "child", "children", "crowd",
        "friend", "friends", "someone", "somebody",
        "he", "she", "him", "her", "his", "hers", "they", "them",
    }),
    "sports": frozenset({"player", "players", "athlete", "athletes", "goalie", "referee", "fans", "teammates"}),
    "celebrations": frozenset({"guest", "guests", "bride", "groom", "host"}),
}

GROUP_WORDS: Dict[str, FrozenSet[str]] = {
    DEFAULT_KEY: frozenset({"people", "group", "friends", "team", "crowd", "couple", "family"}),
    "sports": frozenset({"teammates", "squad", "fans", "players"}),
    "celebrations": frozenset({"guests", "partygoers"}),
    "daily life": frozenset({"coworkers", "commuters", "roommates"}),
}

SINGULAR_WORDS: Dict[str, FrozenSet[str]] = {
    DEFAULT_KEY: frozenset({
        "one", "single", "solo", "lone", "person", "man", "woman", "guy", "girl", "boy",
        "individual", "someone",
    }),
    "sports": frozenset({"player", "athlete", "goalie", "skater"}),
    "celebrations": frozenset({"guest", "bride", "groom", "host"}),
}

ACTION_VERBS: Dict[str, FrozenSet[str]] = {
    DEFAULT_KEY: frozenset({
        "run", "jump", "blow", "skate", "shoot", "toast", "dance", "walk", "hold",
        "raise", "spray", "spin", "cheer", "throw", "kick", "swing", "wave", "lift",
        "sing", "flip", "clap", "laugh", "point", "reach",
    }),
    "sports": frozenset({"dribble", "pass", "score", "tackle", "slide", "catch", "block"}),
    "celebrations": frozenset({"pour", "unwrap", "cut", "hug", "pop"}),
    "daily life": frozenset({"sip", "type", "carry", "ride", "cook", "stir", "scroll"}),
    "pop culture": frozenset({"pose", "strum", "film"}),
}

IRREGULAR_FORMS: Dict[str, Tuple[str, ...]] = {
    "run": ("ran",),
    "blow": ("blew", "blown"),
    "shoot": ("shot",),
    "hold": ("held",),
    "spin": ("spun",),
    "swing": ("swung",),
    "throw": ("threw", "thrown"),
    "sing": ("sang", "sung"),
    "catch": ("caught",),
    "ride": ("rode", "ridden"),
    "slide": ("slid",),
}

STYLE_KEYWORDS: FrozenSet[str] = frozenset({
    "realistic", "photorealistic", "hyperrealistic", "anime", "manga", "3d", "3d render",
    "illustrated", "illustration", "cartoon", "caricature", "pop art", "watercolor",
    "oil painting", "cgi", "digital art", "sketch", "pixel art", "cel shaded",
})


def _merged(table: Mapping[str, FrozenSet[str]], category: Optional[str]) -> FrozenSet[str]:
    base = table[DEFAULT_KEY]
    extra = table.get(normalize_key(category))
    return base | extra if extra else base


def verb_forms(verb: str) -> FrozenSet[str]:
    """Regular inflections of a base verb plus any irregular past forms."""
    v = verb.lower()
    forms = {v, v + "s", v + "es", v + "ing", v + "ed", v + "d"}
    if v.endswith("e"):
        forms.add(v[:-1] + "ing")
    if len(v) >= 3 and v[-1] not in "aeiouwy" and v[-2] in "aeiou" and v[-3] not in "aeiou":
        forms.add(v + v[-1] + "ing")
        forms.add(v + v[-1] + "ed")
    forms.update(IRREGULAR_FORMS.get(v, ()))
    return frozenset(forms)


@lru_cache(maxsize=64)
def vocabulary_for(category: Optional[str] = None) -> Mapping[str, FrozenSet[str]]:
    """Word sets the visual validator uses for a category (defaults plus extensions).

    The result is cached and shared, so it is returned read-only.
    """
    verbs: set = set()
    for verb in _merged(ACTION_VERBS, category):
        verbs |= verb_forms(verb)
    return MappingProxyType({
        "person_words": _merged(PERSON_WORDS, category),
        "group_words": _merged(GROUP_WORDS, category),
        "singular_words": _merged(SINGULAR_WORDS, category),
        "action_verbs": frozenset(verbs),
        "style_keywords": STYLE_KEYWORDS,
    })


def anchor_pack(category: Optional[str], subcategory: Optional[str]) -> List[str]:
    return list(lookup(ANCHORS, category, subcategory))


def negatives_for(category: Optional[str]) -> str:
    return lookup(NEGATIVES, category)


def solo_action_for(category: Optional[str], subcategory: Optional[str]) -> str:
    return lookup(SOLO_ACTIONS, category, subcategory)
