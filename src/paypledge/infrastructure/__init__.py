"""Infrastructure layer — document stores, repositories and account locks."""
