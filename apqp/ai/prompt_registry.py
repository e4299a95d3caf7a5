"""
APQP Document Platform
Prompt Registry.

Prompt templates for document-content generation:
    - Built-in defaults for every generation stage
    - YAML overrides loaded from PROMPTS_DIR (same name + version replaces)
    - {{variable}} substitution

Prompt text is configuration: operators can replace any template by
dropping a YAML file with the same ``name`` into the prompts directory.

Usage:
    from apqp.ai.prompt_registry import get_prompt_registry
    messages = get_prompt_registry().render("inspection_item",
                                            characteristic_name="Bore diameter", ...)
"""

import logging
import re
from pathlib import Path

import yaml
from flask import current_app

logger = logging.getLogger(__name__)


class PromptTemplate:
    """A single prompt template with metadata."""

    def __init__(self, name: str, version: str, system: str, user: str,
                 description: str = "", metadata: dict | None = None):
        self.name = name
        self.version = version
        self.system = system
        self.user = user
        self.description = description
        self.metadata = metadata or {}

    def render(self, **variables) -> list[dict]:
        """
        Render template with variables, returning chat messages.

        Unknown placeholders are left as-is; ``None`` renders as "-".
        """
        system_rendered = self._substitute(self.system, variables)
        user_rendered = self._substitute(self.user, variables)

        messages = []
        if system_rendered.strip():
            messages.append({"role": "system", "content": system_rendered})
        if user_rendered.strip():
            messages.append({"role": "user", "content": user_rendered})
        return messages

    @staticmethod
    def _substitute(template: str, variables: dict) -> str:
        """Replace {{var}} placeholders with values."""
        def replacer(match):
            key = match.group(1).strip()
            if key not in variables:
                return match.group(0)
            value = variables[key]
            return "-" if value is None or value == "" else str(value)
        return re.sub(r"\{\{(\s*\w+\s*)\}\}", replacer, template)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "system_preview": self.system[:200],
            "user_preview": self.user[:200],
        }


class PromptRegistry:
    """
    Registry for loading and managing prompt templates.

    Built-in defaults are registered first; YAML files in ``prompts_dir``
    are loaded afterwards and override defaults with the same name/version.
    """

    def __init__(self, prompts_dir: str | None = None):
        self._prompts_dir = prompts_dir
        self._templates: dict[str, dict[str, PromptTemplate]] = {}  # name → {version → template}
        self._load_defaults()
        if prompts_dir:
            self._load_from_dir()

    def _load_defaults(self):
        for tpl in _DEFAULT_TEMPLATES:
            self._register(tpl)

    def _load_from_dir(self):
        """Load prompt templates from YAML files."""
        prompts_path = Path(self._prompts_dir)
        if not prompts_path.exists():
            logger.info("Prompts directory not found: %s. Using defaults only.", self._prompts_dir)
            return

        for yaml_file in sorted(prompts_path.glob("*.y*ml")):
            try:
                with open(yaml_file, "r", encoding="utf-8") as f:
                    data = yaml.safe_load(f)
            except (OSError, yaml.YAMLError) as e:
                logger.error("Failed to load prompt %s: %s", yaml_file.name, e)
                continue
            if not data or not isinstance(data, dict):
                continue

            tpl = PromptTemplate(
                name=data.get("name", yaml_file.stem),
                version=str(data.get("version", "v1")),
                system=data.get("system", ""),
                user=data.get("user", ""),
                description=data.get("description", ""),
                metadata=data.get("metadata", {}),
            )
            self._register(tpl)
            logger.info("Loaded prompt template: %s (%s) from %s",
                        tpl.name, tpl.version, yaml_file.name)

    def _register(self, template: PromptTemplate):
        self._templates.setdefault(template.name, {})[template.version] = template

    def get(self, name: str, version: str = "v1") -> PromptTemplate | None:
        return self._templates.get(name, {}).get(version)

    def render(self, name: str, version: str = "v1", **variables) -> list[dict]:
        """
        Render a prompt template with variables.

        Raises:
            KeyError: If template not found.
        """
        tpl = self.get(name, version)
        if not tpl:
            raise KeyError(f"Prompt template not found: {name} {version}")
        return tpl.render(**variables)

    def list_templates(self) -> list[dict]:
        return [
            tpl.to_dict()
            for versions in self._templates.values()
            for tpl in versions.values()
        ]


def get_prompt_registry() -> PromptRegistry:
    """Return the app-scoped registry, loaded once from ``PROMPTS_DIR``."""
    registry = current_app.extensions.get("prompt_registry")
    if registry is None:
        registry = PromptRegistry(current_app.config.get("PROMPTS_DIR"))
        current_app.extensions["prompt_registry"] = registry
    return registry


# ── Built-in Default Templates ────────────────────────────────────────────────

_QUALITY_SYSTEM = (
    "You are an IATF 16949 quality engineer who writes APQP documents "
    "(PFMEA, Control Plan, work instructions, inspection standards) for automotive parts. "
    "Respond with a single JSON object only. Do not add commentary or markdown."
)

_DEFAULT_TEMPLATES = [
    PromptTemplate(
        name="pfmea_line",
        version="v1",
        description="Draft one PFMEA failure-mode line for a characteristic",
        system=(
            _QUALITY_SYSTEM + "\n\n"
            "Rate severity, occurrence and detection on the AIAG 1-10 scales:\n"
            "- Severity: safety/regulatory 9-10, primary function 7-8, performance 4-6, cosmetic 1-3\n"
            "- Detection: automatic in-line 1-2, SPC 3-4, manual inspection 5-7, not detectable 8-10\n\n"
            "Return keys: potential_failure_mode, potential_effect, severity, potential_cause, "
            "occurrence, current_control_prevention, current_control_detection, detection, "
            "recommended_action. Ratings must be integers."
        ),
        user=(
            "Product: {{product_name}}\n"
            "Process: {{process_name}}\n"
            "Characteristic: {{characteristic_name}} ({{characteristic_type}}, {{category}})\n"
            "Specification: {{specification}}\n"
            "Measurement method: {{measurement_method}}"
        ),
    ),
    PromptTemplate(
        name="control_plan_item",
        version="v1",
        description="Draft a prevention or detection control for one PFMEA line",
        system=(
            _QUALITY_SYSTEM + "\n\n"
            "Write one {{control_type}} control for the failure mode below.\n"
            "Sampling must match the characteristic category: "
            "critical = 100% / every unit, major = n=5 / every lot, minor = n=3 / daily.\n\n"
            "Return keys: control_method, sample_size, frequency, reaction_plan, responsible."
        ),
        user=(
            "Process step: {{process_step}}\n"
            "Characteristic: {{characteristic_name}} ({{category}})\n"
            "Specification: {{specification}}\n"
            "Measurement method: {{measurement_method}}\n"
            "Failure mode: {{failure_mode}}\n"
            "Effect: {{failure_effect}}\n"
            "Cause: {{failure_cause}}\n"
            "S/O/D: {{severity}}/{{occurrence}}/{{detection}} (RPN {{rpn}}, AP {{action_priority}})\n"
            "Current prevention: {{current_control_prevention}}\n"
            "Current detection: {{current_control_detection}}\n"
            "Recommended action: {{recommended_action}}"
        ),
    ),
    PromptTemplate(
        name="instruction_step",
        version="v1",
        description="Draft an operator work-instruction step for one control plan item",
        system=(
            _QUALITY_SYSTEM + "\n\n"
            "Write one operator step. The key_point must contain three labelled parts:\n"
            "[Control Point] what to control and its specification\n"
            "[Check Method] how to check it\n"
            "[Abnormal Action] what to do when it is out of specification\n\n"
            "Return keys: action, key_point, safety_note, estimated_time_sec "
            "(safety_note may be null; estimated_time_sec is an integer)."
        ),
        user=(
            "Process step: {{process_step}}\n"
            "Characteristic: {{characteristic_name}} ({{category}})\n"
            "Specification: {{specification}}\n"
            "Control type: {{control_type}}\n"
            "Control method: {{control_method}}\n"
            "Sample size / frequency: {{sample_size}} / {{frequency}}\n"
            "Reaction plan: {{reaction_plan}}"
        ),
    ),
    PromptTemplate(
        name="inspection_item",
        version="v1",
        description="Draft an inspection standard item for one control plan item",
        system=(
            _QUALITY_SYSTEM + "\n\n"
            "Write one inspection item. acceptance_criteria must quote the numeric limits "
            "with units when limits exist. ng_handling must cover isolation, re-inspection "
            "and root-cause analysis.\n\n"
            "Return keys: inspection_item_name, inspection_method, acceptance_criteria, ng_handling."
        ),
        user=(
            "Characteristic: {{characteristic_name}} ({{category}})\n"
            "Specification: {{specification}}\n"
            "Limits: LSL {{lsl}} / USL {{usl}} {{unit}}\n"
            "Measurement method: {{measurement_method}}\n"
            "Control method: {{control_method}}\n"
            "Sampling: {{sample_size}} / {{frequency}}"
        ),
    ),
    PromptTemplate(
        name="pfmea_review",
        version="v1",
        description="Audit a complete PFMEA and list findings",
        system=(
            "You are an IATF 16949 auditor reviewing a PFMEA. Check S/O/D ratings against AIAG "
            "scales, completeness of failure modes, cause/failure-mode logic, sufficiency of "
            "prevention and detection controls, and recommended actions for RPN >= 200.\n\n"
            "Finding types: warning (rating or control inadequate), improvement (possible "
            "enhancement), missing (failure mode or control absent).\n\n"
            "Return a JSON object with keys: overall_score (0-100), "
            "findings (list of {type, target, message}), summary (2-3 sentences)."
        ),
        user=(
            "Product: {{product_name}}\n"
            "Process: {{process_name}}\n"
            "Lines: {{lines_count}}\n"
            "--- PFMEA ---\n"
            "{{lines_text}}\n"
            "--- END ---"
        ),
    ),
]
