import sys
import os
import threading

# Ensure project root on path when executed directly
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from core.config import get_config  # noqa: E402
from core.llm.pipeline.fusion import FusionController  # noqa: E402
from core.llm.reasoning import OpenAIReasoningSource  # noqa: E402
from core.logging_setup import configure_logging  # noqa: E402

# Usage: python scripts/quick_ask.py "question text"
# Needs fusion.delivery.endpoint_url (and a reasoning api_key) configured,
# e.g. via NATSTREAM__FUSION__DELIVERY__ENDPOINT_URL.


def main():
    if len(sys.argv) < 2:
        print("Usage: python scripts/quick_ask.py 'your question'")
        return
    question = sys.argv[1]
    cfg = get_config()
    configure_logging(cfg.logging)
    reports = []
    reported = threading.Event()

    def on_metrics(report):
        reports.append(report)
        reported.set()

    controller = FusionController(cfg.fusion, on_metrics=on_metrics)
    source = OpenAIReasoningSource(cfg.fusion.reasoning)
    messages = [{"role": "user", "content": question}]
    try:
        stream = controller.process_stream(messages, source.stream(messages))
        print("QUESTION:", question)
        print("ANSWER:")
        for fragment in stream:
            print(fragment.delta, end="", flush=True)
        print()
        reported.wait(5.0)
    finally:
        controller.close()
    if reports:
        rep = reports[0]
        print("THOUGHTS:", rep.thoughts)
        print("STOP:", rep.stop_reason)
        print("FIRST_RESPONSE_MS:", rep.first_response_time_ms)
        print("TOTAL_MS:", rep.processing_time_ms)


if __name__ == "__main__":
    main()
