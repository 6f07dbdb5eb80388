import argparse
import json
import logging
import sys

from labengine.config import get_config
from labengine.logging_config import setup_logging
from labengine.services.errors import FinalizeError, LabEngineError
from labengine.services.recalc import add_row, create_test_record, on_field_edit
from labengine.services.records import finalize, record_state
from labengine.services.serialization import to_report_json
from labengine.services.templates import default_registry
from labengine.services.worksheet_import import import_workbook, write_input_template

logger = logging.getLogger(__name__)


def apply_payload(record, payload):
    """Feed ``{"header": {...}, "rows": [{...}, ...]}`` through the edit path."""
    for key, value in (payload.get("header") or {}).items():
        record = on_field_edit(record, None, key, value)
    for n, values in enumerate(payload.get("rows") or []):
        if n >= len(record.rows):
            record = add_row(record)
        row_id = record.rows[n].id
        for key, value in values.items():
            record = on_field_edit(record, row_id, key, value)
    return record


def summary_payload(record):
    s = record.summary
    invalid = [{"row_id": None, "field": k, "message": m} for k, m in record.header_invalid.items()]
    for row in record.rows:
        invalid.extend({"row_id": row.id, "field": k, "message": m} for k, m in row.invalid.items())
    return {
        "test_type": record.test_type,
        "state": record_state(record),
        "status": s.status,
        "label": s.label,
        "aggregates": dict(s.aggregates),
        "metrics": dict(s.metrics),
        "optimum": s.optimum.as_dict() if s.optimum else None,
        "curve_states": dict(s.curve_states),
        "warnings": list(s.warnings),
        "invalid": invalid,
        "rows": [{"id": r.id, "derived": dict(r.derived), "errors": dict(r.errors)} for r in record.rows],
    }


def _emit(record, do_finalize):
    if do_finalize:
        out = to_report_json(finalize(record))
    else:
        out = summary_payload(record)
    print(json.dumps(out, indent=2, sort_keys=True))
    return 0


def cmd_schemas(args, registry):
    for test_type in registry.test_types():
        schema = registry.get(test_type)
        print(f"{test_type}\t{schema.name}\t{schema.standard}".rstrip())
    return 0


def cmd_evaluate(args, registry):
    with open(args.file, encoding="utf-8") as fh:
        payload = json.load(fh)
    record = create_test_record(args.test_type, registry, constants=payload.get("constants"))
    record = apply_payload(record, payload)
    return _emit(record, args.finalize)


def cmd_import(args, registry):
    record = create_test_record(args.test_type, registry)
    result = import_workbook(record, args.workbook, sheet=args.sheet)
    for title in result.unknown_columns:
        print(f"warning: unknown column {title!r}", file=sys.stderr)
    return _emit(result.record, args.finalize)


def cmd_template(args, registry):
    write_input_template(registry.get(args.test_type), args.output)
    print(args.output)
    return 0


def build_parser():
    parser = argparse.ArgumentParser(prog="labengine", description="Construction materials test calculations")
    parser.add_argument("--templates", help="Directory of extra template JSON files")
    parser.add_argument("--log-level", help="Override LABENGINE_LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("schemas", help="List known test types")
    p.set_defaults(func=cmd_schemas)

    p = sub.add_parser("evaluate", help="Evaluate a JSON payload of header and row values")
    p.add_argument("test_type")
    p.add_argument("file")
    p.add_argument("--finalize", action="store_true", help="Print the stored report instead of the summary")
    p.set_defaults(func=cmd_evaluate)

    p = sub.add_parser("import", help="Evaluate sample rows from an .xlsx workbook")
    p.add_argument("test_type")
    p.add_argument("workbook")
    p.add_argument("--sheet")
    p.add_argument("--finalize", action="store_true")
    p.set_defaults(func=cmd_import)

    p = sub.add_parser("template", help="Write a blank input workbook for a test type")
    p.add_argument("test_type")
    p.add_argument("output")
    p.set_defaults(func=cmd_template)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    cfg = get_config()
    setup_logging(args.log_level or cfg.LOG_LEVEL, cfg.LOG_JSON)

    try:
        registry = default_registry(args.templates or cfg.TEMPLATE_DIR or "")
        return args.func(args, registry)
    except FinalizeError as exc:
        print(f"error: {exc}", file=sys.stderr)
        for issue in exc.issues:
            where = f"{issue.row_id}." if issue.row_id else ""
            print(f"  {where}{issue.field_key or '-'}: {issue.message}", file=sys.stderr)
        return 1
    except (LabEngineError, OSError, json.JSONDecodeError) as exc:
        logger.debug("Command failed", exc_info=True)
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
