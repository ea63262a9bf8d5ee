"""Tests for the application entry point."""

import os
from unittest.mock import patch

from app import main


class TestMain:
    """Tests for the uvicorn console entry point."""

    def test_serves_app_with_environment_settings(self):
        """Test that HOST, PORT and LOG_LEVEL reach uvicorn."""
        env = {"HOST": "127.0.0.1", "PORT": "9001", "LOG_LEVEL": "DEBUG"}
        with patch.dict(os.environ, env, clear=True), patch.object(main.uvicorn, "run") as run:
            main.main()

        run.assert_called_once_with(main.app, host="127.0.0.1", port=9001, log_level="debug")

    def test_defaults(self):
        """Test the default bind address and port."""
        with patch.dict(os.environ, {}, clear=True), patch.object(main.uvicorn, "run") as run:
            main.main()

        _, kwargs = run.call_args
        assert kwargs["host"] == "0.0.0.0"
        assert kwargs["port"] == 8000
        assert kwargs["log_level"] == "info"
