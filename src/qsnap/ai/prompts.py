"""Centralized Prompt Templates for Quantum Snap.

This module is the SINGLE SOURCE of all prompts sent to Gemini.

Three templates exist:
- ``identity_single_v1``: describe one reference photo precisely.
- ``identity_composite_v1``: reconcile several photos of the same person and
  report only traits that hold across all of them.
- ``candid_generation_v1``: turn a profile plus a pose into an image request.

Example:
    >>> from qsnap.ai.prompts import get_prompt
    >>> template = get_prompt("identity_composite_v1")
    >>> system, user = template.render(image_count=3)
"""

from __future__ import annotations

import json
import textwrap
from dataclasses import dataclass, field
from enum import Enum
from string import Template
from typing import Any

from qsnap.core.models import AnalysisMode, AnalysisProfile, Pose


# =============================================================================
# Enums
# =============================================================================


class PromptCategory(str, Enum):
    """Categories of prompts.

    Attributes:
        IDENTITY_ANALYSIS: Deriving a profile from reference photos.
        IMAGE_GENERATION: Synthesizing a new photo from a profile.
    """

    IDENTITY_ANALYSIS = "identity_analysis"
    IMAGE_GENERATION = "image_generation"


# =============================================================================
# Data Structures
# =============================================================================


@dataclass
class PromptTemplate:
    """Metadata and content for a prompt template.

    Attributes:
        id: Unique identifier (e.g., "identity_single_v1").
        category: Type of prompt for filtering.
        version: Semantic version string for tracking changes.
        system_instruction: Role and behavior instructions for the model.
        user_prompt_template: User prompt with ``$placeholder`` variables.
        output_schema: Expected JSON shape for structured outputs.
        required_variables: Variables that MUST be provided.
        description: Human-readable description of the prompt's purpose.
    """

    id: str
    category: PromptCategory
    version: str
    system_instruction: str
    user_prompt_template: str
    output_schema: dict[str, Any] | None = None
    required_variables: set[str] = field(default_factory=set)
    description: str = ""

    def render(self, **variables: Any) -> tuple[str, str]:
        """Render the template with provided variables.

        Returns:
            Tuple of (system_instruction, rendered_user_prompt).

        Raises:
            ValueError: If required variables are missing.
        """
        missing = self.validate_variables(variables)
        if missing:
            raise ValueError(f"Missing required variables for prompt '{self.id}': {missing}")

        if self.output_schema and "output_schema" not in variables:
            variables["output_schema"] = render_output_schema(self.output_schema)

        rendered = Template(self.user_prompt_template).safe_substitute(variables)
        return self.system_instruction, rendered.strip()

    def validate_variables(self, variables: dict[str, Any]) -> list[str]:
        return sorted(self.required_variables - set(variables.keys()))


# =============================================================================
# System Instructions
# =============================================================================


FORENSIC_SPECIALIST_SYSTEM: str = textwrap.dedent(
    """
    You are a Forensic Identity & Photography Specialist.
    You study reference photos of ONE person and write a precise, reusable identity
    profile that a photographer could use to recognise them in a crowd.
    Describe only what is visible. Never guess names, ages or personal details.
    You must respond with valid JSON only.
    """
).strip()

CANDID_PHOTOGRAPHER_SYSTEM: str = textwrap.dedent(
    """
    You are the friend behind the camera. You take casual, unposed phone photos of the
    person in the reference images. The person's identity must be preserved exactly.
    """
).strip()


# =============================================================================
# Output Schemas
# =============================================================================


IDENTITY_SCHEMA: dict[str, Any] = {
    "description": "Comprehensive biometric description.",
    "outfit": "Detailed outfit or fashion style analysis.",
    "environment": "Context description.",
    "photographicStyle": "Camera angle habits and posing style.",
    "detectedGender": "Male/Female/Non-binary",
    "keyFeatures": ["feature 1", "feature 2", "expression feature"],
    "vibeSummary": "A summary of the personality projected across the images.",
    "consistencyNotes": "What features are 100% consistent across all reference images?",
}

COMPOSITE_IDENTITY_SCHEMA: dict[str, Any] = {
    **IDENTITY_SCHEMA,
    "compositeConfidence": "Number between 0 and 1: how sure you are these photos show one person.",
}


# =============================================================================
# Identity Analysis
# =============================================================================


IDENTITY_SINGLE_PROMPT = PromptTemplate(
    id="identity_single_v1",
    category=PromptCategory.IDENTITY_ANALYSIS,
    version="1.0.0",
    system_instruction=FORENSIC_SPECIALIST_SYSTEM,
    user_prompt_template=textwrap.dedent(
        """
        I have provided 1 reference image of a person.
        Your task is to analyze this specific image identity.

        Analyze these layers with extreme precision:

        1. **BIOMETRIC IDENTITY (The Face)**:
           - Exact face shape, jawline, skin texture, eye shape/color, nose, and mouth.
           - Describe hair texture and style.

        2. **FACIAL EXPRESSION & MICRO-HABITS**:
           - Describe the specific facial muscle habits.
           - Capture the "Vibe" (e.g., "Cool and stoic", "Bubbly and chaotic").

        3. **PHOTOGRAPHIC STYLE & ANGLES**:
           - Analyze camera angle and lens type.

        4. **OUTFIT (Style DNA)**:
           - List visible clothing materials and colors.

        5. **ENVIRONMENT**:
           - Estimate the typical location context or vibe they seem to inhabit.

        Output valid JSON:
        $output_schema
        """
    ),
    output_schema=IDENTITY_SCHEMA,
    description="Precise profile of a single reference photo.",
)

IDENTITY_COMPOSITE_PROMPT = PromptTemplate(
    id="identity_composite_v1",
    category=PromptCategory.IDENTITY_ANALYSIS,
    version="1.0.0",
    system_instruction=FORENSIC_SPECIALIST_SYSTEM,
    user_prompt_template=textwrap.dedent(
        """
        I have provided $image_count reference images of the SAME person.
        Your task is to synthesize a composite identity profile by finding consistency
        across these photos. Where the photos disagree, say so, and report only traits
        that hold in every image.

        Analyze these layers with extreme precision:

        1. **BIOMETRIC IDENTITY (The Face)**:
           - Focus primarily on the FIRST image for the core facial structure.
           - Exact face shape, jawline, skin texture, eye shape/color, nose, and mouth.
           - Check if hair style varies across photos. If so, describe the most common
             or defining style.

        2. **FACIAL EXPRESSION & MICRO-HABITS**:
           - Identify RECURRING habits. Does the subject always tilt their head? Do they
             squint? Do they smile with teeth or without?
           - Capture the "Vibe" (e.g., "Cool and stoic", "Bubbly and chaotic").

        3. **PHOTOGRAPHIC STYLE & ANGLES**:
           - What is their "Signature Angle"? (e.g., "Prefers left side profile",
             "Always high angle selfie").

        4. **OUTFIT (Style DNA)**:
           - Synthesize their fashion sense based on all images.
             (e.g., "Streetwear aesthetic with heavy accessories").

        5. **ENVIRONMENT**:
           - Estimate the typical location context or vibe they seem to inhabit.

        $context_note
        Output valid JSON:
        $output_schema
        """
    ),
    output_schema=COMPOSITE_IDENTITY_SCHEMA,
    required_variables={"image_count"},
    description="Cross-image consistent profile of several reference photos.",
)


# =============================================================================
# Image Generation
# =============================================================================


CANDID_GENERATION_PROMPT = PromptTemplate(
    id="candid_generation_v1",
    category=PromptCategory.IMAGE_GENERATION,
    version="1.0.0",
    system_instruction=CANDID_PHOTOGRAPHER_SYSTEM,
    user_prompt_template=textwrap.dedent(
        """
        Task: Generate a PHOTO-REALISTIC image of the person in the provided reference image.

        CRITICAL IDENTITY & STYLE INSTRUCTION:
        - The output MUST look exactly like the person in the reference image.
        - **FACE & EXPRESSION**: $description.
        - **CONSISTENT HABITS**: $consistency_notes
        - **VIBE**: $vibe_summary
        - **EXPRESSION MATCHING**: Capture the specific vibe: $key_features.
        - **CAMERA ANGLE/STYLE**: $photographic_style.
        - **OUTFIT**: $outfit.
        - **BACKGROUND**: $environment.

        SCENARIO:
        $pose_prompt

        STYLE:
        - "Friend POV" or "Selfie" (depending on reference style).
        - Shot on iPhone/Pixel.
        - Realistic skin texture, not smooth.
        - Slight motion blur or focus imperfections are good.
        - NO AI GLOSS. Make it look like a raw camera roll photo.
        """
    ),
    required_variables={
        "description",
        "outfit",
        "environment",
        "photographic_style",
        "key_features",
        "pose_prompt",
    },
    description="Candid friend-POV photo of the profiled person in one pose.",
)


# =============================================================================
# Registry
# =============================================================================


PROMPT_REGISTRY: dict[str, PromptTemplate] = {}


def register_prompt(template: PromptTemplate) -> None:
    """Register a prompt template in the global registry.

    Raises:
        ValueError: If a prompt with the same ID is already registered.
    """
    if template.id in PROMPT_REGISTRY:
        raise ValueError(f"Prompt '{template.id}' is already registered")
    PROMPT_REGISTRY[template.id] = template


def get_prompt(prompt_id: str) -> PromptTemplate:
    """Retrieve a prompt template by ID.

    Raises:
        KeyError: If no prompt with the given ID exists.
    """
    if prompt_id not in PROMPT_REGISTRY:
        available = ", ".join(sorted(PROMPT_REGISTRY.keys()))
        raise KeyError(f"Prompt '{prompt_id}' not found. Available prompts: {available}")
    return PROMPT_REGISTRY[prompt_id]


for _template in (IDENTITY_SINGLE_PROMPT, IDENTITY_COMPOSITE_PROMPT, CANDID_GENERATION_PROMPT):
    register_prompt(_template)


# =============================================================================
# Helper Functions
# =============================================================================


def render_output_schema(schema: dict[str, Any]) -> str:
    return json.dumps(schema, indent=2)


def render_identity_prompt(
    mode: AnalysisMode, image_count: int, context_originals: int = 0
) -> tuple[str, str]:
    """Render the analysis prompt for the chosen mode.

    Args:
        mode: Single or composite analysis.
        image_count: Number of reference crops attached.
        context_originals: Number of full originals appended after the crops.

    Returns:
        Tuple of (system_instruction, user_prompt).
    """
    if mode == AnalysisMode.SINGLE:
        return IDENTITY_SINGLE_PROMPT.render()

    context_note = ""
    if context_originals:
        context_note = (
            f"The last {context_originals} image(s) are uncropped originals for scene "
            "context only. Use them for outfit and environment, not for the face."
        )
    return IDENTITY_COMPOSITE_PROMPT.render(image_count=image_count, context_note=context_note)


def render_generation_prompt(profile: AnalysisProfile, pose: Pose) -> str:
    """Fill the generation template from a profile and a pose."""
    _, user = CANDID_GENERATION_PROMPT.render(
        description=profile.description or "Match the reference photo",
        consistency_notes=profile.consistency_notes or "Maintain facial consistency.",
        vibe_summary=profile.vibe_summary or "Natural and candid.",
        key_features=", ".join(profile.key_features) or "natural expression",
        photographic_style=profile.photographic_style or "Casual phone photo",
        outfit=profile.outfit or "As in the reference photo",
        environment=profile.environment or "Everyday location",
        pose_prompt=pose.prompt,
    )
    return f"{CANDID_GENERATION_PROMPT.system_instruction}\n\n{user}"
