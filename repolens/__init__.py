"""RepoLens: repository analysis pipeline service."""
