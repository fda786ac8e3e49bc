"""
Rate Table Parser

Parses a fee rate sheet (Excel or CSV) and generates the fees section of
transaction_config.yaml

Sheet layout (one rate per row):

    table     | key        | subkey            | rate
    platform  | buy        |                   | 0.0009
    network   | SOL        |                   | 0.00001
    provider  | onramp     | credit_debit_card | 0.01
    minimums  | platform   |                   | 0.01
"""

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import pandas as pd
import yaml
from loguru import logger

from .config import DEFAULT_CONFIG


REQUIRED_COLUMNS = ['table', 'key', 'rate']
FLAT_TABLES = {'platform', 'network', 'exchange', 'protocol', 'minimums'}

# Chain name mapping
CHAIN_MAPPING = {
    'bitcoin': 'BTC',
    'ethereum': 'ETH',
    'erc': 'ETH',
    'solana': 'SOL',
    'sui': 'SUI',
}


class RateTableParser:
    """
    Parse a rate sheet and generate the YAML fees configuration

    Features:
    - Excel (.xlsx/.xls) and CSV input
    - Nested provider tables (onramp / offramp per payment method)
    - Chain name normalization for network rates
    - Rows with '-' or non-numeric rates are skipped
    """

    def __init__(self, sheet_path: str, sheet_name: Optional[str] = None):
        """
        Initialize parser

        Args:
            sheet_path: Path to the Excel or CSV file
            sheet_name: Excel sheet (first sheet when None)
        """
        self.sheet_path = Path(sheet_path)
        self.sheet_name = sheet_name
        self.skipped_rows = 0
        self.fees: Dict[str, Any] = {}

    def _read(self) -> pd.DataFrame:
        if self.sheet_path.suffix.lower() == '.csv':
            df = pd.read_csv(self.sheet_path, dtype=str, keep_default_na=False)
        else:
            df = pd.read_excel(self.sheet_path, sheet_name=self.sheet_name or 0, dtype=str)
        df.columns = [str(c).strip().lower() for c in df.columns]

        missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
        if missing:
            raise ValueError(f"Rate sheet {self.sheet_path} is missing columns: {missing}")
        if 'subkey' not in df.columns:
            df['subkey'] = ''
        return df

    @staticmethod
    def _cell(value) -> str:
        if value is None or pd.isna(value):
            return ''
        return str(value).strip()

    def parse(self) -> Dict[str, Any]:
        """
        Parse the sheet into a fees dict

        Returns:
            {'platform': {...}, 'network': {...}, 'provider': {'onramp': {...}, ...}, ...}
        """
        logger.info(f"Parsing rate sheet {self.sheet_path}")
        df = self._read()

        fees: Dict[str, Any] = {}
        self.skipped_rows = 0

        for _, row in df.iterrows():
            table = self._cell(row['table']).lower()
            key = self._cell(row['key'])
            subkey = self._cell(row['subkey'])
            raw_rate = self._cell(row['rate'])

            if not table or not key:
                continue

            # '-' marks a rate that is not offered
            if raw_rate in ('', '-'):
                self.skipped_rows += 1
                continue
            try:
                rate = float(raw_rate)
            except ValueError:
                logger.warning(f"Skipping {table}/{key}: non-numeric rate {raw_rate!r}")
                self.skipped_rows += 1
                continue

            if table == 'provider':
                if not subkey:
                    logger.warning(f"Skipping provider/{key}: payment method (subkey) missing")
                    self.skipped_rows += 1
                    continue
                fees.setdefault('provider', {}).setdefault(key.lower(), {})[subkey.lower()] = rate
            elif table == 'network':
                chain = CHAIN_MAPPING.get(key.lower(), key.upper())
                fees.setdefault('network', {})[chain] = rate
            elif table in FLAT_TABLES:
                fees.setdefault(table, {})[key.lower()] = rate
            else:
                logger.warning(f"Skipping unknown rate table '{table}'")
                self.skipped_rows += 1

        self.fees = fees
        logger.info(f"Parsed {sum(self._count(v) for v in fees.values())} rates "
                    f"({self.skipped_rows} rows skipped)")
        return fees

    def _count(self, table: Dict) -> int:
        return sum(self._count(v) if isinstance(v, dict) else 1 for v in table.values())

    def generate_yaml(self, output_path: str = "transaction_config.yaml", include_defaults: bool = True) -> Path:
        """
        Generate the YAML configuration file

        Args:
            output_path: Output file path
            include_defaults: Also write the non-fee default sections

        Returns:
            Path of the written file
        """
        fees = self.parse()

        config: Dict[str, Any] = {}
        if include_defaults:
            config.update({k: v for k, v in DEFAULT_CONFIG.items() if k != 'fees'})
        config['fees'] = fees
        config['metadata'] = {
            'generated_at': datetime.now().isoformat(),
            'source': str(self.sheet_path),
        }

        output_path = Path(output_path)
        with open(output_path, 'w', encoding='utf-8') as f:
            yaml.dump(config, f, default_flow_style=False, sort_keys=False, allow_unicode=True)

        logger.info(f"✓ Generated {output_path}")
        return output_path

    def print_summary(self):
        """Print rate table summary"""
        print("\n" + "=" * 60)
        print("FEE RATE SUMMARY")
        print("=" * 60)

        for table, rates in self.fees.items():
            print(f"\n{table.upper()}:")
            for key, value in rates.items():
                if isinstance(value, dict):
                    for subkey, rate in value.items():
                        print(f"  {key}/{subkey}: {rate * 100:.3f}%")
                else:
                    print(f"  {key}: {value * 100:.3f}%" if table != 'minimums' else f"  {key}: ${value}")

        print("\n" + "=" * 60)


if __name__ == "__main__":
    import sys

    sheet_file = sys.argv[1] if len(sys.argv) > 1 else "fee_rates.xlsx"

    parser = RateTableParser(sheet_file)
    parser.generate_yaml("transaction_config.yaml")
    parser.print_summary()
