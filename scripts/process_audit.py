import argparse
import os
import sys
import uuid

from dotenv import load_dotenv

sys.path.append(os.path.abspath("."))
from auditor.config import Settings
from auditor.logger import configure_logging
from auditor.main import build_services
from auditor.models import AuditContext
from auditor.pipeline import AuditRequest


def main(argv=None):
    parser = argparse.ArgumentParser(description="Audit one recorded call against its rubric.")
    parser.add_argument("audio")
    parser.add_argument("images", nargs="*")
    parser.add_argument("--call-type", default="")
    parser.add_argument("--executive-id", required=True)
    parser.add_argument("--executive-name", default="")
    parser.add_argument("--client-id", default="")
    parser.add_argument("--call-date", default="")
    parser.add_argument("--call-duration", default=None)
    args = parser.parse_args(argv)

    for p in [args.audio, *args.images]:
        if not os.path.exists(p):
            print(f"File not found: {p}")
            return 1

    load_dotenv()
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    services = build_services(settings)

    request = AuditRequest(
        audio_path=args.audio,
        image_paths=args.images,
        context=AuditContext(
            executive_name=args.executive_name,
            executive_id=args.executive_id,
            call_type=args.call_type,
            client_id=args.client_id,
            call_date=args.call_date,
            call_duration=args.call_duration,
        ),
        correlation_id=str(uuid.uuid4()),
    )
    outcome = services.pipeline.run(request)
    r = outcome.result
    artifact = services.artifacts.path(outcome.artifact_reference)
    print(f"Done: {artifact} | Catalog: {outcome.catalog_name} | "
          f"Score: {r.total_score:g}/{r.max_possible_score:g} ({r.percentage:.1f}%)"
          f"{' | cached' if outcome.cached else ''}")
    if r.unevaluated_topics:
        print(f"Unevaluated topics: {', '.join(u.topic_label for u in r.unevaluated_topics)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
