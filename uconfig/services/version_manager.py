"""Version number allocation for configuration entries."""

from uconfig.domain.errors import InvalidArgumentError, PersistenceError
from uconfig.logger.logger import get_logger
from uconfig.logger.types import Category, param
from uconfig.repository.config_dao import ConfigDao


class VersionManager:
    """Computes the next version number of an entry from stored history."""

    def __init__(self, dao: ConfigDao) -> None:
        """
        Initialize VersionManager.

        Args:
            dao: DAO answering get_latest_version
        """
        self.dao = dao
        self.logger = get_logger().with_category(Category.CONFIG)

    def get_next_version(self, config_id: int) -> int:
        """
        Return the next version number for an entry.

        Args:
            config_id: Positive entry id

        Returns:
            1 + the highest stored version, or 1 when none exists

        Raises:
            InvalidArgumentError: If config_id is not a positive integer
            PersistenceError: If the latest version cannot be read
        """
        if (
            not isinstance(config_id, int)
            or isinstance(config_id, bool)
            or config_id <= 0
        ):
            self.logger.error(
                f"Invalid config ID for versioning: {config_id}",
                None,
                param("config_id", config_id),
            )
            raise InvalidArgumentError(
                "The configuration ID must be a positive integer.",
                config_id=config_id,
            )

        try:
            latest = self.dao.get_latest_version(config_id)
        except Exception as e:
            self.logger.error(
                "Error calculating version",
                e,
                param("config_id", config_id),
            )
            raise PersistenceError(
                "Error calculating version. Please try again later.",
                config_id=config_id,
            ) from e

        next_version = (latest or 0) + 1
        self.logger.debug(
            f"Next version for config ID {config_id}: {next_version}",
            param("config_id", config_id),
            param("version", next_version),
        )
        return next_version
