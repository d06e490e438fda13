"""Provider backends, workflows and prompts."""
