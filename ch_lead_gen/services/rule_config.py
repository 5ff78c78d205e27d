"""
Rules config store: YAML file with a change-aware in-memory cache and
hardcoded fallback.

Reads hand out fresh Rule objects, so a running orchestrator holds its own
snapshot and never sees a half-applied edit. Writes validate, bump the
version counter, keep a timestamped backup and replace the file atomically.
"""
import copy
import glob
import logging
import os
import shutil
import tempfile
import threading
import time
from typing import Dict, List, Optional

import yaml

from ch_lead_gen.models.rule import Rule

logger = logging.getLogger('services.rule_config')

MAX_BACKUPS = 10


class RuleError(Exception):
    """Configuration error surfaced to the caller without touching run state."""

    def __init__(self, rule_key, message):
        self.rule_key = rule_key
        super().__init__(message)


class RuleNotFound(RuleError):
    """No rule is configured under the requested key."""

    def __init__(self, rule_key):
        super().__init__(rule_key, f"Rule '{rule_key}' not found")


class RuleDisabled(RuleError):
    """The rule is disabled and the run was not forced."""

    def __init__(self, rule_key):
        super().__init__(rule_key, f"Rule '{rule_key}' is disabled")


class RuleValidationError(ValueError):
    """A rule write was rejected."""

    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__('; '.join(self.errors))


def _default_config():
    """Hardcoded fallback if YAML is missing."""
    return {
        'version': 0,
        'defaults': {
            'days_ago': 180,
            'company_status': 'active',
            'company_type': 'ltd',
            'allowed_countries': ['GB'],
            'max_results': 50,
            'check_confirmation_statement': False,
        },
        'rules': {
            'six_month_companies': {
                'name': '6 Month Old Companies',
                'description': 'Find companies that are 6 months old',
                'enabled': True,
                'search_parameters': {
                    'months_ago': 6,
                    'company_status': 'active',
                    'company_type': 'ltd',
                    'allowed_countries': ['GB', 'US'],
                    'max_results': 200,
                    'check_confirmation_statement': False,
                },
                'schedule': {
                    'enabled': True,
                    'frequency': 'weekly',
                    'time': '09:00',
                    'day_of_week': 1,
                    'day_of_month': 1,
                },
                'instantly': {
                    'enabled': False,
                    'lead_list_name': 'CH - 6 Month Companies',
                    'enable_enrichment': False,
                },
            },
            'confirmation_statement_missing': {
                'name': 'Companies Missing Confirmation Statements',
                'description': 'Find companies 350+ days old missing confirmation statements',
                'enabled': True,
                'search_parameters': {
                    'days_ago': 350,
                    'company_status': 'active',
                    'company_type': 'ltd',
                    'allowed_countries': ['GB'],
                    'max_results': 100,
                    'check_confirmation_statement': True,
                },
                'schedule': {
                    'enabled': True,
                    'frequency': 'daily',
                    'time': '10:00',
                },
                'instantly': {
                    'enabled': False,
                    'lead_list_name': 'CH - Missing Confirmation Statements',
                    'enable_enrichment': True,
                },
            },
        },
    }


class RuleConfigStore:
    """Versioned read/write access to the rules YAML file."""

    def __init__(self, path: str):
        self.path = path
        self._config = None
        self._signature = None
        self._lock = threading.RLock()

    # ── Loading ───────────────────────────────────────────────────────

    def _file_signature(self):
        """(mtime_ns, size, inode) of the rules file, or None when it is missing."""
        try:
            st = os.stat(self.path)
        except FileNotFoundError:
            return None
        return st.st_mtime_ns, st.st_size, st.st_ino

    def load(self) -> dict:
        """
        Load config from YAML, with in-memory cache and hardcoded fallback.

        The cache is dropped whenever the file changes on disk, so writes
        made by another process (web worker, CLI, hand edit) are picked up.
        """
        with self._lock:
            signature = self._file_signature()
            if self._config is not None and signature == self._signature:
                return self._config
            try:
                with open(self.path, 'r') as f:
                    config = yaml.safe_load(f) or {}
                config.setdefault('version', 0)
                config.setdefault('defaults', {})
                config['rules'] = config.get('rules') or {}
                logger.info("Rules loaded from %s (version=%s, %d rules)",
                            self.path, config['version'], len(config['rules']))
                self._log_invalid_rules(config)
            except FileNotFoundError:
                logger.warning("Rules file %s not found, using built-in defaults", self.path)
                config = _default_config()
            self._config = config
            self._signature = signature
            return self._config

    def _log_invalid_rules(self, config):
        for key, data in config['rules'].items():
            try:
                errors = Rule.from_dict(key, copy.deepcopy(data), config.get('defaults')).validate()
            except Exception as e:
                errors = [str(e)]
            if errors:
                logger.warning("Rule %s in %s is invalid: %s", key, self.path, '; '.join(errors))

    def reload(self) -> dict:
        with self._lock:
            self._config = None
            return self.load()

    @property
    def version(self) -> int:
        return int(self.load().get('version', 0))

    # ── Reads ─────────────────────────────────────────────────────────

    def get_rule(self, rule_key: str) -> Optional[Rule]:
        cfg = self.load()
        data = cfg['rules'].get(rule_key)
        if data is None:
            return None
        return Rule.from_dict(rule_key, copy.deepcopy(data), cfg.get('defaults'))

    def get_all_rules(self) -> Dict[str, Rule]:
        cfg = self.load()
        return {
            key: Rule.from_dict(key, copy.deepcopy(data), cfg.get('defaults'))
            for key, data in cfg['rules'].items()
        }

    def get_enabled_rules(self) -> Dict[str, Rule]:
        return {k: r for k, r in self.get_all_rules().items() if r.enabled}

    # ── Writes ────────────────────────────────────────────────────────

    def add_rule(self, rule_key: str, data: dict) -> Rule:
        with self._lock:
            cfg = copy.deepcopy(self.load())
            if rule_key in cfg['rules']:
                raise RuleValidationError([f"Rule '{rule_key}' already exists"])
            rule = self._validated(rule_key, data, cfg)
            cfg['rules'][rule_key] = rule.to_dict()
            self._write(cfg)
            logger.info("Rule %s added", rule_key)
            return rule

    def update_rule(self, rule_key: str, data: dict) -> Rule:
        with self._lock:
            cfg = copy.deepcopy(self.load())
            if rule_key not in cfg['rules']:
                raise RuleNotFound(rule_key)
            rule = self._validated(rule_key, data, cfg)
            cfg['rules'][rule_key] = rule.to_dict()
            self._write(cfg)
            logger.info("Rule %s updated", rule_key)
            return rule

    def delete_rule(self, rule_key: str) -> None:
        with self._lock:
            cfg = copy.deepcopy(self.load())
            if rule_key not in cfg['rules']:
                raise RuleNotFound(rule_key)
            del cfg['rules'][rule_key]
            self._write(cfg)
            logger.info("Rule %s deleted", rule_key)

    def _validated(self, rule_key, data, cfg) -> Rule:
        errors = []
        if not rule_key or not rule_key.replace('_', '').replace('-', '').isalnum():
            errors.append('rule key must be letters, digits, "_" or "-"')
        rule = Rule.from_dict(rule_key, data, cfg.get('defaults'))
        errors.extend(rule.validate())
        if errors:
            raise RuleValidationError(errors)
        return rule

    def _write(self, cfg: dict) -> None:
        cfg['version'] = int(cfg.get('version', 0)) + 1
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)

        if os.path.exists(self.path):
            shutil.copy2(self.path, f'{self.path}.backup.{int(time.time() * 1000)}')
            self._prune_backups()

        fd, tmp_path = tempfile.mkstemp(dir=directory, suffix='.tmp')
        try:
            with os.fdopen(fd, 'w') as f:
                yaml.safe_dump(cfg, f, default_flow_style=False, sort_keys=False)
            os.replace(tmp_path, self.path)
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        self._config = cfg
        self._signature = self._file_signature()

    # ── Backups ───────────────────────────────────────────────────────

    def list_backups(self) -> List[str]:
        """Backup file paths, newest first."""
        return sorted(glob.glob(f'{glob.escape(self.path)}.backup.*'), reverse=True)

    def _prune_backups(self):
        for stale in self.list_backups()[MAX_BACKUPS:]:
            os.remove(stale)
