"""Load flow definitions from YAML files."""

import logging
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import ValidationError

from ..models import Flow

logger = logging.getLogger(__name__)


def load_flows_from_yaml(config_path: Path) -> List[Flow]:
    """
    Load flow definitions from a YAML file.

    Expected format:

    ```yaml
    flows:
      - id: tech-digest
        project_id: newsroom
        name: Tech digest
        steps:
          - flow_step_id: fetch
            step_type: input
            handler:
              slug: rss
              settings:
                feed_url: https://example.com/feed.xml
          - step_type: ai
            prompt: Summarize for a technical audience
            handler:
              slug: keyword_annotator
          - step_type: output
            handler:
              slug: export
    ```

    Steps without ``position`` are numbered in file order. An invalid flow is
    logged and skipped; the others still load.

    Args:
        config_path: Path to the YAML configuration file

    Returns:
        List of Flow objects
    """
    if not config_path.exists():
        logger.warning(f"Flow config file not found: {config_path}")
        return []

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Error loading flow config: {e}")
        return []

    if not data:
        return []

    flows = []
    for flow_data in data.get("flows") or []:
        flow = _parse_flow(flow_data)
        if flow:
            flows.append(flow)

    logger.info(f"Loaded {len(flows)} flows from {config_path}")
    return flows


def _parse_flow(data: dict) -> Optional[Flow]:
    """Parse a single flow definition from dict."""
    if not isinstance(data, dict) or "name" not in data:
        logger.warning("Flow config missing required 'name' field")
        return None

    steps = []
    for index, step in enumerate(data.get("steps") or []):
        step = dict(step)
        step.setdefault("position", index)
        if isinstance(step.get("handler"), str):
            step["handler"] = {"slug": step["handler"]}
        steps.append(step)

    try:
        return Flow.model_validate({**data, "steps": steps})
    except ValidationError as e:
        logger.error(f"Invalid flow '{data.get('name')}': {e}")
        return None


def save_flows_to_yaml(flows: List[Flow], config_path: Path) -> None:
    """
    Save flow definitions to a YAML file.

    Args:
        flows: Flows to write
        config_path: Path to write the YAML file
    """
    data = {
        "flows": [
            flow.model_dump(mode="json", exclude={"created_at", "updated_at"})
            for flow in flows
        ]
    }

    config_path.parent.mkdir(parents=True, exist_ok=True)

    with open(config_path, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, default_flow_style=False, allow_unicode=True, sort_keys=False)

    logger.info(f"Saved {len(flows)} flows to {config_path}")


# Example configuration template
EXAMPLE_CONFIG = """# PacketFlow flow configuration
#
# Each flow is an ordered list of typed steps. Allowed sequences:
#   input  -> input | ai | output
#   ai     -> ai | update | output
#   update -> update | output
#   output -> output

flows:
  # Fetch one new feed item, annotate it, export it as JSON
  - id: feed-digest
    project_id: default
    name: Feed digest
    steps:
      - flow_step_id: fetch
        step_type: input
        handler:
          slug: rss
          settings:
            feed_url: https://example.com/feed.xml
      - flow_step_id: annotate
        step_type: ai
        prompt: Extract keywords and a one-line summary
        handler:
          slug: keyword_annotator
          settings:
            max_keywords: 8
      - flow_step_id: export
        step_type: output
        handler:
          slug: export
          settings:
            output_dir: data/exports
            format: json

  # Refresh stored documents with new annotations
  - id: document-refresh
    project_id: default
    name: Document refresh
    steps:
      - step_type: input
        handler:
          slug: rss
          settings:
            feed_url: https://example.com/updates.xml
      - step_type: ai
        handler: keyword_annotator
      - step_type: update
        handler:
          slug: json_update
          settings:
            documents_dir: data/documents
            create_missing: true
"""


def write_example_config(config_path: Path) -> None:
    """Write an example configuration file."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w", encoding="utf-8") as f:
        f.write(EXAMPLE_CONFIG)
    logger.info(f"Wrote example flow configuration to {config_path}")
