"""
Configuration Management Module
Loads and validates configuration from config.yaml
"""

import math
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, Optional

import yaml

logger = logging.getLogger(__name__)

SIGNALS = ("embedding", "amount", "currency", "date", "name")


@dataclass
class DatabaseConfig:
    """Database configuration"""
    host: str = "localhost"
    port: int = 5432
    user: str = "inbox_matcher"
    password: str = "inbox_matcher"
    name: str = "inbox_matcher"
    url: Optional[str] = None
    pool_size: int = 5
    max_overflow: int = 10
    echo: bool = False


@dataclass
class MatchingConfig:
    """Signal weights and decision thresholds"""
    weights: Dict[str, float] = field(default_factory=lambda: {
        'embedding': 0.50,
        'amount': 0.35,
        'currency': 0.10,
        'date': 0.05,
        'name': 0.05
    })
    auto_threshold: float = 0.95
    high_threshold: float = 0.75
    suggest_threshold: float = 0.40


@dataclass
class RetrievalConfig:
    """Candidate retrieval bounds"""
    top_k: int = 20
    date_window_days: int = 7
    candidate_limit: int = 50
    index_timeout_seconds: float = 2.0


@dataclass
class ScoringConfig:
    """Signal scorer parameters"""
    date_decay_days: int = 14


@dataclass
class EmbeddingConfig:
    """External embedding provider settings"""
    enabled: bool = False
    provider_url: str = ""
    model: str = "text-embedding-004"
    dimensions: int = 768
    timeout_seconds: float = 5.0
    max_retries: int = 2
    api_key_env: str = "EMBEDDING_API_KEY"


@dataclass
class SuggestionConfig:
    """Suggestion lifecycle settings"""
    expire_after_days: int = 30
    auto_match_actor: str = "system:auto-match"
    batch_size: int = 100


@dataclass
class CalibrationConfig:
    """Per-tenant threshold calibration from user feedback"""
    enabled: bool = True
    lookback_days: int = 90
    min_samples: int = 5
    conservative_min_samples: int = 8
    max_adjustment: float = 0.03
    suggest_min: float = 0.30
    suggest_max: float = 0.70
    auto_min: float = 0.90
    auto_max: float = 0.98
    excellent_auto_threshold: float = 0.92


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    file: Optional[str] = None
    console: bool = True
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    security_log_dir: str = "logs"


@dataclass
class AlgorithmConfig:
    """Algorithm version information"""
    version: str = "1.0.0"
    name: str = "Weighted Signal Matcher"
    last_updated: str = "2026-10-01"


class ConfigurationError(Exception):
    """Raised when configuration is invalid"""
    pass


class ConfigManager:
    """Manages system configuration"""

    _instance: Optional['ConfigManager'] = None

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration manager

        Args:
            config_path: Path to config.yaml file
        """
        self.config_path = Path(config_path) if config_path else self._find_config()
        self._raw_config: Dict[str, Any] = {}
        self.matching: MatchingConfig = MatchingConfig()
        self.retrieval: RetrievalConfig = RetrievalConfig()
        self.scoring: ScoringConfig = ScoringConfig()
        self.embedding: EmbeddingConfig = EmbeddingConfig()
        self.suggestions: SuggestionConfig = SuggestionConfig()
        self.calibration: CalibrationConfig = CalibrationConfig()
        self.logging: LoggingConfig = LoggingConfig()
        self.algorithm: AlgorithmConfig = AlgorithmConfig()
        self.database: DatabaseConfig = DatabaseConfig()

        if self.config_path and self.config_path.exists():
            self.load()
        else:
            logger.warning(f"Config file not found at {self.config_path}, using defaults")

    def _find_config(self) -> Path:
        """Find config.yaml in common locations"""
        search_paths = [
            Path.cwd() / "config.yaml",
            Path(__file__).parent.parent / "config.yaml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return search_paths[0]

    def load(self) -> None:
        """Load configuration from YAML file"""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                self._raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")
        except FileNotFoundError:
            raise ConfigurationError(f"Config file not found: {self.config_path}")

        if not isinstance(self._raw_config, dict):
            raise ConfigurationError("Config file must contain a mapping at the top level")

        self._parse_matching()
        self._parse_retrieval()
        self._parse_scoring()
        self._parse_embedding()
        self._parse_suggestions()
        self._parse_calibration()
        self._parse_logging()
        self._parse_algorithm()
        self._parse_database()
        self._validate()

    def _parse_database(self) -> None:
        """Parse database configuration"""
        cfg = self._raw_config.get('database', {})
        self.database = DatabaseConfig(
            host=cfg.get('host', self.database.host),
            port=cfg.get('port', self.database.port),
            user=cfg.get('user', self.database.user),
            password=cfg.get('password', self.database.password),
            name=cfg.get('name', self.database.name),
            url=cfg.get('url', self.database.url),
            pool_size=cfg.get('pool_size', self.database.pool_size),
            max_overflow=cfg.get('max_overflow', self.database.max_overflow),
            echo=cfg.get('echo', self.database.echo)
        )

    def _parse_matching(self) -> None:
        """Parse matching configuration"""
        cfg = self._raw_config.get('matching', {})

        # Partial weight maps fall back to the defaults for missing signals
        weights = dict(self.matching.weights)
        weights.update(cfg.get('weights', {}))

        thresholds = cfg.get('thresholds', {})
        self.matching = MatchingConfig(
            weights=weights,
            auto_threshold=thresholds.get('auto', 0.95),
            high_threshold=thresholds.get('high', 0.75),
            suggest_threshold=thresholds.get('suggest', 0.40)
        )

    def _parse_retrieval(self) -> None:
        """Parse retrieval configuration"""
        cfg = self._raw_config.get('retrieval', {})
        self.retrieval = RetrievalConfig(
            top_k=cfg.get('top_k', 20),
            date_window_days=cfg.get('date_window_days', 7),
            candidate_limit=cfg.get('candidate_limit', 50),
            index_timeout_seconds=cfg.get('index_timeout_seconds', 2.0)
        )

    def _parse_scoring(self) -> None:
        """Parse scoring configuration"""
        cfg = self._raw_config.get('scoring', {})
        self.scoring = ScoringConfig(
            date_decay_days=cfg.get('date_decay_days', 14)
        )

    def _parse_embedding(self) -> None:
        """Parse embedding provider configuration"""
        cfg = self._raw_config.get('embedding', {})
        self.embedding = EmbeddingConfig(
            enabled=cfg.get('enabled', False),
            provider_url=cfg.get('provider_url', ''),
            model=cfg.get('model', 'text-embedding-004'),
            dimensions=cfg.get('dimensions', 768),
            timeout_seconds=cfg.get('timeout_seconds', 5.0),
            max_retries=cfg.get('max_retries', 2),
            api_key_env=cfg.get('api_key_env', 'EMBEDDING_API_KEY')
        )

    def _parse_suggestions(self) -> None:
        """Parse suggestion lifecycle configuration"""
        cfg = self._raw_config.get('suggestions', {})
        self.suggestions = SuggestionConfig(
            expire_after_days=cfg.get('expire_after_days', 30),
            auto_match_actor=cfg.get('auto_match_actor', 'system:auto-match'),
            batch_size=cfg.get('batch_size', 100)
        )

    def _parse_calibration(self) -> None:
        """Parse calibration configuration"""
        cfg = self._raw_config.get('calibration', {})
        defaults = CalibrationConfig()
        self.calibration = CalibrationConfig(
            enabled=cfg.get('enabled', defaults.enabled),
            lookback_days=cfg.get('lookback_days', defaults.lookback_days),
            min_samples=cfg.get('min_samples', defaults.min_samples),
            conservative_min_samples=cfg.get('conservative_min_samples', defaults.conservative_min_samples),
            max_adjustment=cfg.get('max_adjustment', defaults.max_adjustment),
            suggest_min=cfg.get('suggest_min', defaults.suggest_min),
            suggest_max=cfg.get('suggest_max', defaults.suggest_max),
            auto_min=cfg.get('auto_min', defaults.auto_min),
            auto_max=cfg.get('auto_max', defaults.auto_max),
            excellent_auto_threshold=cfg.get('excellent_auto_threshold', defaults.excellent_auto_threshold)
        )

    def _parse_logging(self) -> None:
        """Parse logging configuration"""
        cfg = self._raw_config.get('logging', {})
        self.logging = LoggingConfig(
            level=cfg.get('level', 'INFO'),
            file=cfg.get('file'),
            console=cfg.get('console', True),
            format=cfg.get('format', self.logging.format),
            security_log_dir=cfg.get('security_log_dir', 'logs')
        )

    def _parse_algorithm(self) -> None:
        """Parse algorithm configuration"""
        cfg = self._raw_config.get('algorithm', {})
        self.algorithm = AlgorithmConfig(
            version=cfg.get('version', '1.0.0'),
            name=cfg.get('name', 'Weighted Signal Matcher'),
            last_updated=cfg.get('last_updated', '2026-10-01')
        )

    @classmethod
    def get_instance(cls, config_path: Optional[str] = None) -> 'ConfigManager':
        """Get singleton instance of ConfigManager"""
        if cls._instance is None:
            cls._instance = ConfigManager(config_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton instance (useful for testing)"""
        cls._instance = None

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary (database credentials omitted)"""
        return {
            'matching': {
                'weights': self.matching.weights,
                'thresholds': {
                    'auto': self.matching.auto_threshold,
                    'high': self.matching.high_threshold,
                    'suggest': self.matching.suggest_threshold
                }
            },
            'retrieval': {
                'top_k': self.retrieval.top_k,
                'date_window_days': self.retrieval.date_window_days,
                'candidate_limit': self.retrieval.candidate_limit,
                'index_timeout_seconds': self.retrieval.index_timeout_seconds
            },
            'scoring': {
                'date_decay_days': self.scoring.date_decay_days
            },
            'embedding': {
                'enabled': self.embedding.enabled,
                'model': self.embedding.model,
                'dimensions': self.embedding.dimensions,
                'timeout_seconds': self.embedding.timeout_seconds
            },
            'suggestions': {
                'expire_after_days': self.suggestions.expire_after_days,
                'auto_match_actor': self.suggestions.auto_match_actor
            },
            'calibration': {
                'enabled': self.calibration.enabled,
                'lookback_days': self.calibration.lookback_days,
                'min_samples': self.calibration.min_samples,
                'max_adjustment': self.calibration.max_adjustment
            },
            'algorithm': {
                'version': self.algorithm.version,
                'name': self.algorithm.name,
                'last_updated': self.algorithm.last_updated
            }
        }

    def _validate(self) -> None:
        """Reject values the matching engine cannot work with"""
        weights = self.matching.weights
        unknown = set(weights) - set(SIGNALS)
        if unknown:
            raise ConfigurationError(f"Unknown signal weights: {sorted(unknown)}")
        for signal, weight in weights.items():
            if not isinstance(weight, (int, float)) or math.isnan(weight) or weight < 0:
                raise ConfigurationError(f"Weight for '{signal}' must be a non-negative number")
        if sum(weights.values()) <= 0:
            raise ConfigurationError("At least one signal weight must be positive")

        m = self.matching
        for name, value in (('auto', m.auto_threshold), ('high', m.high_threshold),
                            ('suggest', m.suggest_threshold)):
            if not 0.0 <= value <= 1.0:
                raise ConfigurationError(f"Threshold '{name}' must be within [0, 1], got {value}")
        if not m.suggest_threshold <= m.high_threshold <= m.auto_threshold:
            raise ConfigurationError("Thresholds must satisfy suggest <= high <= auto")

        r = self.retrieval
        if r.top_k <= 0 or r.candidate_limit <= 0:
            raise ConfigurationError("retrieval.top_k and retrieval.candidate_limit must be positive")
        if r.date_window_days < 0:
            raise ConfigurationError("retrieval.date_window_days must not be negative")
        if r.index_timeout_seconds <= 0:
            raise ConfigurationError("retrieval.index_timeout_seconds must be positive")
        if self.scoring.date_decay_days <= 0:
            raise ConfigurationError("scoring.date_decay_days must be positive")

        c = self.calibration
        if not (c.suggest_min <= c.suggest_max and c.auto_min <= c.auto_max):
            raise ConfigurationError("Calibration bounds are inverted")
        if c.max_adjustment < 0:
            raise ConfigurationError("calibration.max_adjustment must not be negative")


def get_config(config_path: Optional[str] = None) -> ConfigManager:
    """Convenience function to get configuration instance"""
    return ConfigManager.get_instance(config_path)


def configure_logging(config: ConfigManager) -> None:
    """Apply the ``logging`` section to the root logger."""
    cfg = config.logging
    handlers = []
    if cfg.console:
        handlers.append(logging.StreamHandler())
    if cfg.file:
        Path(cfg.file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(cfg.file, encoding='utf-8'))
    logging.basicConfig(
        level=getattr(logging, cfg.level.upper(), logging.INFO),
        format=cfg.format,
        handlers=handlers or None,
        force=True
    )
