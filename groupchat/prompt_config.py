"""
Prompt template configuration for group chat turns.

Stored as JSON::

    {
      "pass_keyword": "[PASS]",
      "prompt_template": "..."
    }

Supported placeholders in prompt_template:
  {{MY_NAME}}            - this participant's display name
  {{PARTICIPANTS}}       - comma-separated list of the other participants
  {{TRANSCRIPT_PATH}}    - path of the JSON transcript ({{HISTORY_PATH}} is accepted too)
  {{NEW_MESSAGE_COUNT}}  - number of new messages since the participant's last turn
  {{PASS_KEYWORD}}       - the configured pass keyword
"""
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_PASS_KEYWORD = "[PASS]"

DEFAULT_PROMPT_TEMPLATE = """[Group Chat] You are "{{MY_NAME}}", participants: {{PARTICIPANTS}}. History: {{TRANSCRIPT_PATH}}
There are {{NEW_MESSAGE_COUNT}} new message(s) since your last turn.
Do not ask for pasted messages. Use the history file as the only source of latest conversation updates.
If you have nothing to add, reply with exactly "{{PASS_KEYWORD}}".
Use @xxx in the message means this message is just for xxx, reply with exactly "{{PASS_KEYWORD}}" if xxx is not you.
If you know what to do, there is no need to reply anything, just do it."""


@dataclass
class PromptConfig:
    prompt_template: str = DEFAULT_PROMPT_TEMPLATE
    pass_keyword: str = DEFAULT_PASS_KEYWORD

    def render(
        self,
        my_name: str,
        participants: str,
        transcript_path: str,
        new_message_count: int,
    ) -> str:
        return (
            self.prompt_template
            .replace("{{MY_NAME}}", my_name)
            .replace("{{PARTICIPANTS}}", participants)
            .replace("{{TRANSCRIPT_PATH}}", transcript_path)
            .replace("{{HISTORY_PATH}}", transcript_path)
            .replace("{{NEW_MESSAGE_COUNT}}", str(new_message_count))
            .replace("{{PASS_KEYWORD}}", self.pass_keyword)
        )

    def to_dict(self) -> dict:
        return {"prompt_template": self.prompt_template, "pass_keyword": self.pass_keyword}

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2, sort_keys=True)

    def reset_to_defaults(self, path: Optional[Path] = None) -> None:
        self.prompt_template = DEFAULT_PROMPT_TEMPLATE
        self.pass_keyword = DEFAULT_PASS_KEYWORD
        if path is not None:
            self.save(path)

    @classmethod
    def load(cls, path: Path) -> "PromptConfig":
        """Load from disk, writing the defaults when the file is missing or unreadable."""
        path = Path(path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return cls(
                prompt_template=data["prompt_template"],
                pass_keyword=data["pass_keyword"],
            )
        except FileNotFoundError:
            pass
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Prompt config at {path} unreadable, using defaults: {e}")

        config = cls()
        try:
            config.save(path)
        except OSError as e:
            logger.warning(f"Could not write default prompt config to {path}: {e}")
        return config
