import importlib
import sys

WORKFLOWS = {
    "enqueue": "workflows.enrich_enqueue",
    "consumer": "workflows.enrich_consumer",
}


def main(workflow_name: str, argv: list):
    """Run a workflow's CLI with the remaining arguments."""
    module_name = WORKFLOWS.get(workflow_name)
    if module_name is None:
        print(f"Unknown workflow: {workflow_name} (choose from: {', '.join(WORKFLOWS)})")
        sys.exit(1)

    module = importlib.import_module(module_name)
    sys.argv = [f"main.py {workflow_name}", *argv]
    module.main()


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage: python main.py <enqueue|consumer> [options]")
        sys.exit(1)

    main(sys.argv[1], sys.argv[2:])
