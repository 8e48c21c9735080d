"""Script to validate a form template JSON file

Usage:
    python scripts/validate_template.py path/to/template.json

Exit code is 0 when the template is valid (warnings allowed), 1 otherwise.
"""
import json
import sys
from collections import Counter
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from smartforms.domain.models import FormTemplate
from smartforms.services.submission_service import SubmissionService
from smartforms.utils.logger import setup_logging


def validate_template(path: str) -> int:
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        print(f"❌ Cannot read {path}: {e}")
        return 1

    try:
        template = FormTemplate.model_validate(raw)
    except PydanticValidationError as e:
        print(f"❌ Template {raw.get('template_id', path)} does not parse:")
        for error in e.errors():
            location = ".".join(str(part) for part in error["loc"])
            print(f"   • {location}: {error['msg']}")
        return 1

    print(f"✅ Parsed template: {template.name or template.template_id}")
    print(f"   Version: {template.version}")
    print()

    print("=" * 60)
    print("TEMPLATE SUMMARY")
    print("=" * 60)

    field_types = Counter(f.field_type.value for f in template.fields)
    print(f"\n📋 FIELDS ({len(template.fields)} total):")
    for field_type, count in field_types.items():
        print(f"   • {field_type}: {count}")

    print(f"\n🔀 CONDITIONAL RULES: {len(template.conditional_rules)}")
    print(f"✔️  VALIDATION RULES: {len(template.validation_rules)}")
    print(f"⚙️  BUSINESS RULES: {len(template.business_rules)}")

    if template.workflow:
        print(f"\n🚀 START STEP: {template.workflow.start_step.step_id}")
        for step in template.workflow.steps:
            targets = ", ".join(f"{a.action_id}->{a.target_step_id}" for a in step.actions) or "-"
            print(f"   [{step.kind.value}] {step.step_id}: {targets}")

    result = SubmissionService().validate_template(template)
    errors, warnings = result["errors"], result["warnings"]

    if errors:
        print("\n❌ ERRORS:")
        for e in errors:
            print(f"   • [{e['type']}] {e['path']}: {e['message']}")

    if warnings:
        print("\n⚠️ WARNINGS:")
        for w in warnings:
            print(f"   • [{w['type']}] {w['path']}: {w['message']}")

    if not errors and not warnings:
        print("\n🎉 TEMPLATE IS VALID!")
    elif not errors:
        print("\n✅ TEMPLATE IS VALID (with warnings)")
    else:
        print("\n❌ TEMPLATE HAS ERRORS")

    return 0 if result["is_valid"] else 1


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print(__doc__)
        sys.exit(2)
    setup_logging(log_level="WARNING", log_to_file=False)
    sys.exit(validate_template(sys.argv[1]))
