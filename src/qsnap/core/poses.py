"""Pose catalog for album generation.

Every pose is a "friend POV" scenario: candid, natural, slightly imperfect,
as if a friend took the photo during a day out. The catalog is fixed; a run
draws from it without replacement.
"""

from __future__ import annotations

import random

from qsnap.core.models import Pose

CANDID_MOMENTS: tuple[Pose, ...] = (
    Pose(
        id="friend_candid_laugh",
        prompt=(
            "Candid snapshot taken by a friend across the table or nearby. The subject is "
            "laughing naturally, eyes slightly squinted from smiling, hand maybe covering mouth "
            "or touching face. Not posing, just a genuine moment. Background shows a slightly "
            "different angle of the same location."
        ),
    ),
    Pose(
        id="walking_past",
        prompt=(
            "Motion shot. The subject is walking past the camera or walking away, looking back "
            "over their shoulder casually. Shot from eye level. Slight motion blur on the limbs. "
            "Looks like a paparazzi or fan photo. Distinct background elements visible."
        ),
    ),
    Pose(
        id="checking_phone_relaxed",
        prompt=(
            "Subject is distracted, looking down at something (phone, menu, or object), distinct "
            "candid vibe. Body language is completely relaxed and unposed. Shot from a slightly "
            "higher angle (friend standing up)."
        ),
    ),
    Pose(
        id="caught_off_guard",
        prompt=(
            "Mid-motion or mid-speech. The subject is looking slightly away from the lens, mouth "
            'slightly open as if talking. Authentic, unguarded expression. "Stolen shot" '
            "aesthetic. Background depth is natural, not excessively blurry."
        ),
    ),
    Pose(
        id="close_up_selfie_style",
        prompt=(
            "Shot appears to be a selfie or taken very close with a wide lens (0.5x phone camera "
            "style). Distortion on the nose/features is minimal but perspective is intimate. "
            "Fun, goofy, or cute expression. Background is visible but wide-angle."
        ),
    ),
    Pose(
        id="wide_environmental_context",
        prompt=(
            "Wide shot from a distance (20-30 feet away). Shows the subject small in the frame, "
            "interacting with the environment (sitting on a ledge, leaning on a wall). "
            'Emphasizes the location atmosphere. "Tourist photo" vibe.'
        ),
    ),
    Pose(
        id="low_angle_sneaker_check",
        prompt=(
            "Low angle shot, looking up at the subject. Fashion-forward but casual "
            '"outfit check" vibe. Emphasizes the shoes and pants, subject looking down at the '
            "camera or looking away confidently."
        ),
    ),
    Pose(
        id="flash_photography_night",
        prompt=(
            "Direct flash photography (if environment allows, or simulated daylight flash). "
            "Harsh shadows behind the subject, high contrast, retro digital camera aesthetic "
            "(2000s vibe). Very trendy and raw."
        ),
    ),
    Pose(
        id="messy_hair_windy",
        prompt=(
            "Wind blowing hair across face, subject trying to fix it. Dynamic, chaotic, but "
            "aesthetic. Natural lighting hitting the face unevenly. Very realistic texture."
        ),
    ),
    Pose(
        id="resting_bored",
        prompt=(
            "Subject resting chin on hand, looking bored or tired but cute. Very relatable "
            '"waiting for food" or "tired after walking" vibe. Slouching posture. Authentic vibe.'
        ),
    ),
)


def catalog_size() -> int:
    return len(CANDID_MOMENTS)


def select_poses(
    count: int,
    rng: random.Random | None = None,
    catalog: tuple[Pose, ...] = CANDID_MOMENTS,
) -> list[Pose]:
    """Draw ``count`` distinct poses in random order.

    The count is capped at the catalog size. Pass a seeded ``random.Random``
    for a reproducible draw.

    Example:
        >>> poses = select_poses(3, random.Random(42))
        >>> len(poses)
        3
    """
    if count < 1:
        return []
    rng = rng or random.Random()
    shuffled = list(catalog)
    rng.shuffle(shuffled)
    return shuffled[: min(count, len(shuffled))]
