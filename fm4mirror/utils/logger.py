import logging
from pathlib import Path


class LineRotatingFileHandler(logging.FileHandler):
    """Rotiert nach Zeilen statt nach Größe: fm4mirror.log -> .1 -> .2 ..."""

    def __init__(self, filename, max_lines: int, backup_count: int, encoding: str = 'utf-8'):
        super().__init__(filename, 'a', encoding)
        self.max_lines = max_lines
        self.backup_count = backup_count
        self.line_count = self._count_lines()

    def _count_lines(self) -> int:
        try:
            with open(self.baseFilename, 'r', encoding=self.encoding) as f:
                return sum(1 for _ in f)
        except OSError:
            return 0

    def _backup(self, index: int) -> Path:
        return Path(f"{self.baseFilename}.{index}")

    def emit(self, record):
        super().emit(record)
        self.line_count += 1
        if self.line_count >= self.max_lines:
            self.rollover()

    def rollover(self):
        if self.stream:
            self.stream.close()
            self.stream = None

        current = Path(self.baseFilename)
        if self.backup_count > 0:
            self._backup(self.backup_count).unlink(missing_ok=True)
            for index in range(self.backup_count - 1, 0, -1):
                if self._backup(index).exists():
                    self._backup(index).replace(self._backup(index + 1))
            if current.exists():
                current.replace(self._backup(1))
        else:
            current.unlink(missing_ok=True)

        self.line_count = 0
        self.stream = self._open()


_logger = None
_handlers = []


def setup_logging(log_level: str = "INFO", log_dir: str = "logs", max_lines: int = 5000, backup_count: int = 5):
    """Setup logging to file + console"""
    global _logger, _handlers

    _logger = logging.getLogger()
    _logger.setLevel(log_level)

    # Re-running setup (tests, reload) must not stack handlers
    for handler in list(_handlers):
        _logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(
        fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    _logger.addHandler(console_handler)

    logs_path = Path(log_dir)
    logs_path.mkdir(parents=True, exist_ok=True)
    log_file = logs_path / "fm4mirror.log"
    file_handler = LineRotatingFileHandler(log_file, max_lines, backup_count)
    file_handler.setLevel(log_level)
    file_handler.setFormatter(formatter)
    _logger.addHandler(file_handler)

    _handlers = [console_handler, file_handler]

    # Reduce noise from external libraries
    logging.getLogger('apscheduler').setLevel(logging.WARNING)
    logging.getLogger('httpx').setLevel(logging.WARNING)

    _logger.info(f"✓ Logging initialized - Level: {log_level}, File: {log_file}")


def change_log_level_runtime(new_level: str):
    """Ändere Log-Level zur Laufzeit"""
    if not _logger:
        return False

    try:
        new_level = new_level.upper()
        _logger.setLevel(new_level)

        for handler in _handlers:
            handler.setLevel(new_level)

        logging.getLogger(__name__).info(f"Log-Level changed to {new_level}")
        return True
    except ValueError as e:
        logging.getLogger(__name__).error(f"Failed to change log level: {e}")
        return False
