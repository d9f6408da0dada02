"""
CSV file connector.
"""

from .column_analyzer import analyze_column, analyze_columns
from .csv_connector import CsvConnector

__all__ = ["CsvConnector", "analyze_column", "analyze_columns"]
