import sys
import logging

PROC_LOGGER_PREFIX = "proc."


class SubprocessLogFilter(logging.Filter):
    """
    This filter identifies logs coming from the subprocess loggers
    so they can be routed separately from the starter's own messages.
    """
    def filter(self, record):
        # The 'proc.' prefix is used by the native runner for server output
        return not record.name.startswith(PROC_LOGGER_PREFIX)


class MainFormatter(logging.Formatter):
    """A custom formatter to handle regular logs and raw server output."""

    default_format = '%(asctime)s - %(levelname)-8s - [%(name)s] - %(message)s'

    def format(self, record):
        # Server output lines already carry their own timestamps and levels.
        if record.name.startswith(PROC_LOGGER_PREFIX):
            return f"[{record.name[len(PROC_LOGGER_PREFIX):]}] {record.getMessage()}"

        original_format = self._style._fmt
        self._style._fmt = self.default_format
        formatted_message = super().format(record)
        self._style._fmt = original_format
        return formatted_message


def setup_logging(console_level: int = logging.INFO, show_server_output: bool = False) -> None:
    """
    Configures the root logger for the starter.
    Clears any previously configured handlers to prevent duplication.

    :param console_level: The logging level for the console output (e.g., logging.INFO).
    :param show_server_output: If False, output captured from server processes is hidden from the console.
    """
    root_logger = logging.getLogger()
    # Set root level to lowest to capture all messages for handler filtering
    root_logger.setLevel(logging.DEBUG)

    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    #* --- Console Handler ---
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(MainFormatter())
    if not show_server_output:
        console_handler.addFilter(SubprocessLogFilter())
    root_logger.addHandler(console_handler)

    # Chatty third-party loggers only show up in verbose mode.
    logging.getLogger("urllib3").setLevel(logging.DEBUG if console_level <= logging.DEBUG else logging.WARNING)
