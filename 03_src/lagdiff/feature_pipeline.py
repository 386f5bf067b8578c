"""
Главный пайплайн для лаговых разностей.
Объединяет калькулятор LagFeatures и обеспечивает:
- Загрузку YAML-конфигурации с профилями
- Загрузку и валидацию данных (CSV)
- Декларативное создание признаков на основе графа зависимостей (DAG)
- Отбор колонок по шаблонам
- Сохранение результатов в Parquet
- Детальное логирование процесса
"""

import fnmatch
import logging
from collections import deque
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd
import yaml

from .exceptions import ConfigError, FeatureGraphError
from .lag_features import LagFeatures

LOGGER_NAME = 'LagDifference'


class LagDifferencePipeline:
    """
    Главный класс для создания лаговых признаков.

    Загружает конфигурацию, строит и выполняет граф зависимостей признаков
    (выход одного признака может быть входом другого, например разность разности),
    валидирует данные и сохраняет результаты.
    """

    def __init__(self, config_path: Optional[str] = None, profile: str = "default"):
        """
        Инициализация пайплайна.

        Args:
            config_path: Путь к YAML. По умолчанию 04_configs/lag_differences.yml.
            profile: Имя профиля из секции profiles.
        """
        self.profile = profile
        self.logger = logging.getLogger(LOGGER_NAME)
        self.config = self._load_config(config_path)
        self._setup_logging()

        self.lag_features = LagFeatures()
        self._method_registry = self._register_methods()

        # Статистика выполнения
        self.stats = {
            'original_columns': 0,
            'created_features': 0,
            'total_columns': 0,
            'processing_time': 0,
            'data_shape': (0, 0)
        }

    def _register_methods(self) -> Dict[str, Any]:
        """Собирает все публичные `calculate_*` методы калькулятора в один словарь."""
        registry = {}
        for method_name in dir(self.lag_features):
            if method_name.startswith('calculate_'):
                key = method_name.replace('calculate_', '')
                registry[key] = getattr(self.lag_features, method_name)
        return registry

    def _get_project_root(self) -> Path:
        """Возвращает корневую папку проекта."""
        return Path(__file__).resolve().parent.parent.parent

    def _resolve_to_project_root(self, path_str: str) -> Path:
        """Преобразует относительный путь в абсолютный."""
        p = Path(path_str)
        if p.is_absolute():
            return p
        return self._get_project_root() / p

    def _load_config(self, config_path: Optional[str] = None) -> Dict:
        """Загружает конфигурацию из YAML файла и применяет профиль."""
        if config_path is None:
            config_path = self._get_project_root() / "04_configs" / "lag_differences.yml"

        try:
            with open(config_path, 'r', encoding='utf-8') as file:
                config = yaml.safe_load(file)
        except FileNotFoundError:
            self.logger.warning(f"Config file not found at {config_path}. Using empty configuration.")
            return {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Не удалось разобрать YAML {config_path}: {e}") from e

        if config is None:
            return {}
        if not isinstance(config, dict):
            raise ConfigError(f"Ожидается словарь на верхнем уровне {config_path}, получено {type(config).__name__}")

        return self._apply_profile(config)

    def _apply_profile(self, config: Dict) -> Dict:
        """
        Накладывает секции профиля поверх базовой конфигурации.

        Профиль может наследовать другой профиль через inherit_from:
        сначала применяются предки, затем сам профиль.
        """
        profiles = config.get('profiles') or {}
        if self.profile not in profiles:
            return config

        chain = []
        name = self.profile
        while name is not None:
            if name in chain:
                raise ConfigError(f"Циклическое наследование профилей: {' -> '.join(chain + [name])}")
            if name not in profiles:
                raise ConfigError(f"Профиль '{chain[-1]}' наследует неизвестный профиль '{name}'")
            chain.append(name)
            name = (profiles[name] or {}).get('inherit_from')

        for name in reversed(chain):
            for section, values in (profiles[name] or {}).items():
                self._merge_section(config, section, values)
        return config

    @staticmethod
    def _merge_section(config: Dict, section: str, values) -> None:
        if section == 'inherit_from':
            return
        if isinstance(values, dict) and isinstance(config.get(section), dict):
            config[section] = {**config[section], **values}
        else:
            config[section] = values

    def _setup_logging(self) -> logging.Logger:
        """Настраивает логирование."""
        logger = self.logger
        log_level = ((self.config.get('pipeline_settings') or {}).get('logging') or {}).get('level', 'INFO')
        logger.setLevel(getattr(logging, str(log_level).upper(), logging.INFO))
        if not logger.handlers:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(logging.INFO)
            formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s', datefmt='%Y-%m-%d %H:%M:%S')
            console_handler.setFormatter(formatter)
            logger.addHandler(console_handler)
        return logger

    def load_data(self, file_path: Optional[str] = None) -> pd.DataFrame:
        """Загружает и валидирует исходные данные."""
        if file_path is None:
            file_path = (self.config.get('pipeline_settings') or {}).get('input_file')
            if not file_path:
                raise ConfigError("Не задан pipeline_settings.input_file")
        resolved_path = self._resolve_to_project_root(str(file_path))
        self.logger.info(f"Loading data from: {resolved_path}")

        df = pd.read_csv(str(resolved_path))
        self.logger.info(f"Data loaded. Shape: {df.shape}")
        df = self._validate_and_prepare_data(df)
        self.stats['original_columns'] = len(df.columns)
        self.stats['data_shape'] = df.shape
        return df

    def _validate_and_prepare_data(self, df: pd.DataFrame) -> pd.DataFrame:
        """Валидирует и подготавливает данные."""
        self.logger.info("Validating data...")
        df = df.copy()
        expected_cols = (self.config.get('metadata') or {}).get('expected_input_columns', ['Time', 'Close'])
        missing_cols = [col for col in expected_cols if col not in df.columns]

        if missing_cols:
            column_mapping = self._auto_map_columns(list(df.columns), missing_cols)
            if column_mapping:
                df = df.rename(columns=column_mapping)
                self.logger.info(f"Auto-mapped columns: {column_mapping}")

        if 'Time' in df.columns:
            try:
                df['Time'] = pd.to_datetime(df['Time'])
                df = df.set_index('Time')
            except (TypeError, ValueError) as e:
                self.logger.warning(f"Could not process Time column: {e}")

        validation_config = (self.config.get('pipeline_settings') or {}).get('validation') or {}
        if validation_config.get('check_duplicates', True) and isinstance(df.index, pd.DatetimeIndex):
            n_dup = int(df.index.duplicated().sum())
            if n_dup:
                self.logger.warning(f"Dropping {n_dup} duplicated timestamps")
                df = df[~df.index.duplicated(keep='first')]

        if validation_config.get('check_sorting', True) and isinstance(df.index, pd.DatetimeIndex):
            if not df.index.is_monotonic_increasing:
                self.logger.info("Index is not sorted. Sorting by time.")
                df = df.sort_index()

        return df

    def _auto_map_columns(self, available_cols: List[str], expected_cols: List[str]) -> Dict[str, str]:
        """Автоматическое сопоставление названий колонок (регистр, синонимы)."""
        mapping = {}
        variants = {
            'Time': ['time', 'TIME', 'Date', 'date', 'DATE', 'Timestamp', 'timestamp'],
        }
        for expected_col in expected_cols:
            candidates = variants.get(expected_col, []) + [c for c in available_cols if c.lower() == expected_col.lower()]
            for variant in candidates:
                if variant in available_cols and variant not in mapping:
                    mapping[variant] = expected_col
                    break
        return mapping

    def _resolve_execution_order(self, definitions: Dict[str, Dict], available_columns: List[str]) -> List[str]:
        """
        Топологическая сортировка признаков (алгоритм Кана).

        Raises:
            FeatureGraphError: признак без входов, неизвестный вход или цикл в графе.
        """
        graph = {}
        for name, defn in definitions.items():
            deps = list((defn or {}).get('inputs') or [])
            if not deps:
                raise FeatureGraphError(f"Признак '{name}' не имеет входов (inputs)")
            for dep in deps:
                if dep not in definitions and dep not in available_columns:
                    raise FeatureGraphError(f"Признак '{name}' ссылается на неизвестный вход '{dep}'")
            graph[name] = [dep for dep in deps if dep in definitions]

        in_degree = {name: len(set(deps)) for name, deps in graph.items()}
        adj = {name: [] for name in graph}
        for u, deps in graph.items():
            for v_dep in set(deps):
                adj[v_dep].append(u)

        queue = deque([name for name in graph if in_degree[name] == 0])
        execution_order = []
        while queue:
            u = queue.popleft()
            execution_order.append(u)
            for v_neighbor in adj[u]:
                in_degree[v_neighbor] -= 1
                if in_degree[v_neighbor] == 0:
                    queue.append(v_neighbor)

        if len(execution_order) != len(graph):
            unresolved = sorted(set(graph) - set(execution_order))
            raise FeatureGraphError(f"Цикл в графе зависимостей признаков: {unresolved}")
        return execution_order

    def create_features(self, df: pd.DataFrame) -> pd.DataFrame:
        """
        Строит и выполняет DAG генерации признаков из `feature_definitions`.

        Ошибки валидации калькуляторов (InvalidSequence, InvalidLag) не перехватываются.
        Результаты собираются в словарь и превращаются в DataFrame один раз.
        """
        definitions = self.config.get('feature_definitions') or {}
        self.stats['original_columns'] = len(df.columns)
        self.stats['data_shape'] = df.shape
        if not definitions:
            self.logger.warning("No feature_definitions configured. Returning input unchanged.")
            self.stats['total_columns'] = len(df.columns)
            return df.copy()

        execution_order = self._resolve_execution_order(definitions, list(df.columns))
        self.logger.info(f"Execution order determined for {len(execution_order)} features.")

        results_cache = {col: df[col] for col in df.columns}
        created = []
        for name in execution_order:
            if name in df.columns:
                self.logger.warning(f"Feature '{name}' clashes with an input column. Skipped.")
                continue

            defn = definitions[name] or {}
            method_name = defn.get('method')
            params = defn.get('params') or {}
            inputs = defn.get('inputs') or []

            if method_name not in self._method_registry:
                self.logger.warning(f"Method '{method_name}' not found for feature '{name}'")
                continue
            unavailable = [dep for dep in inputs if dep not in results_cache]
            if unavailable:
                self.logger.warning(f"Feature '{name}' skipped: inputs not computed {unavailable}")
                continue

            func = self._method_registry[method_name]
            self.logger.debug(f"Computing '{name}' = {method_name}({inputs}, {params})")
            results_cache[name] = func(*[results_cache[dep] for dep in inputs], **params)
            if not defn.get('is_intermediate', False):
                created.append(name)

        # Сборка финального DataFrame без фрагментации
        final_data = {col: df[col] for col in df.columns}
        for name in created:
            final_data[name] = results_cache[name]
        final_df = pd.DataFrame({k: v.reset_index(drop=True) for k, v in final_data.items()})
        final_df.index = df.index

        final_df = self._filter_columns(final_df, list(df.columns))
        self.stats['created_features'] = len([c for c in final_df.columns if c not in df.columns])
        self.stats['total_columns'] = len(final_df.columns)
        self.logger.info(f"Created {self.stats['created_features']} features. Total columns: {self.stats['total_columns']}")
        return final_df

    def _filter_columns(self, df: pd.DataFrame, original_columns: List[str]) -> pd.DataFrame:
        """Отбирает признаки по шаблонам pipeline_settings.feature_filter (fnmatch)."""
        ps = self.config.get('pipeline_settings') or {}
        filter_cfg = ps.get('feature_filter') or {}
        include_patterns = filter_cfg.get('include') or []
        exclude_patterns = filter_cfg.get('exclude') or []
        if not include_patterns and not exclude_patterns:
            return df

        keep_original = bool(ps.get('keep_input_columns', True))

        def match_any(name: str, pats: List[str]) -> bool:
            return any(fnmatch.fnmatch(name, p) for p in pats) if pats else False

        selected_columns = []
        for col in df.columns:
            if col in original_columns:
                if keep_original:
                    selected_columns.append(col)
                continue
            included = match_any(col, include_patterns) if include_patterns else True
            if included and not match_any(col, exclude_patterns):
                selected_columns.append(col)

        self.logger.info(f"Feature filter applied | Columns kept: {len(selected_columns)}/{len(df.columns)}")
        return df[selected_columns]

    def save_results(self, df: pd.DataFrame, output_path: Optional[str] = None) -> str:
        """Сохраняет результаты в формате Parquet."""
        self.logger.info("Saving results...")
        ps = self.config.get('pipeline_settings') or {}
        base_output = output_path or ps.get('output_file') or "01_data/processed/lag_differences.parquet"

        resolved_output = self._resolve_to_project_root(str(base_output))
        resolved_output.parent.mkdir(parents=True, exist_ok=True)

        parquet_settings = ps.get('parquet_settings') or {}
        if parquet_settings.get('downcast_float32', False):
            float_cols = df.select_dtypes(include=['float64']).columns
            if len(float_cols) > 0:
                self.logger.info(f"Casting {len(float_cols)} columns to float32 for storage optimization.")
                df = df.astype({col: 'float32' for col in float_cols})

        df.to_parquet(
            str(resolved_output),
            engine=parquet_settings.get('engine', 'pyarrow'),
            compression=parquet_settings.get('compression', 'snappy'),
            index=parquet_settings.get('index', True)
        )
        self.logger.info(f"Saved to: {resolved_output}")
        return str(resolved_output)

    def run_full_pipeline(self, input_path: Optional[str] = None, output_path: Optional[str] = None) -> Tuple[pd.DataFrame, Dict]:
        """Запускает полный пайплайн: загрузка, признаки, сохранение."""
        self.logger.info("STARTING LAG DIFFERENCE PIPELINE")
        start_time = pd.Timestamp.now()

        try:
            df = self.load_data(input_path)
            df_with_features = self.create_features(df)
            self.stats['processing_time'] = (pd.Timestamp.now() - start_time).total_seconds()
            self.save_results(df_with_features, output_path)

            self.logger.info("PIPELINE COMPLETED SUCCESSFULLY!")
            return df_with_features, self.stats

        except Exception as e:
            self.logger.error(f"Pipeline failed: {e}", exc_info=True)
            raise
