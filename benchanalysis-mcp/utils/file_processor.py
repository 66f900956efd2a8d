# utils/file_processor.py
import json
import logging
import pandas as pd
from pathlib import Path
from typing import Any, Dict, List, Optional
import aiofiles

logger = logging.getLogger(__name__)

# client payload values stay text even when they look numeric
TEXT_COLUMNS = {f"{prefix}{name}": str for name in ("content", "id") for prefix in ("", "message.", "message/")}

# -----------------------------------------------
# File loading functions
# -----------------------------------------------
async def load_json_file(file_path: Path) -> Any:
    """Read and decode a JSON file asynchronously.

    Raises FileNotFoundError if the file is missing and ValueError
    (json.JSONDecodeError) if it is not valid JSON.
    """
    async with aiofiles.open(file_path, 'r', encoding='utf-8') as f:
        content = await f.read()
    return json.loads(content)

async def load_log_lines(file_path: Path) -> List[str]:
    """Read a line-oriented log file asynchronously"""
    async with aiofiles.open(file_path, 'r', encoding='utf-8', errors='replace') as f:
        content = await f.read()
    return content.splitlines()

async def load_utilization_samples(file_path: Path) -> Optional[pd.DataFrame]:
    """Load one run's utilization samples; None if missing or unreadable"""
    if not Path(file_path).exists():
        return None
    try:
        data = await load_json_file(file_path)
        df = pd.DataFrame(data)
    except (OSError, ValueError, TypeError) as e:
        logger.warning("Failed to read utilization file %s: %s", file_path, e)
        return None
    if 'timestamp' not in df.columns:
        logger.warning("Utilization file %s has no 'timestamp' column", file_path)
        return None
    return df

def load_client_state(file_path: Path) -> Optional[pd.DataFrame]:
    """Load a client-state CSV export (one request per row)"""
    try:
        df = pd.read_csv(file_path, dtype=TEXT_COLUMNS)
    except Exception as e:
        logger.warning("Failed to read client state %s: %s", file_path, e)
        return None
    required_cols = ['method', 'timestamp']
    columns = {c.replace('message.', '').replace('message/', '') for c in df.columns}
    if not all(col in columns for col in required_cols):
        return None
    return df

# -----------------------------------------------
# File writing functions
# -----------------------------------------------
async def write_json_output(data: Dict[str, Any], file_path: Path) -> None:
    """Write data to JSON file asynchronously"""
    try:
        async with aiofiles.open(file_path, 'w', encoding='utf-8') as f:
            await f.write(json.dumps(data, indent=2, ensure_ascii=False, default=str))
    except Exception as e:
        raise Exception(f"Failed to write JSON file {file_path}: {str(e)}")

async def write_csv_output(data: List[Dict[str, Any]], file_path: Path,
                          headers: Optional[List[str]] = None) -> None:
    """Write data to CSV file asynchronously"""
    try:
        if not data:
            return

        if headers is None:
            headers = list(data[0].keys()) if data else []

        async with aiofiles.open(file_path, 'w', newline='', encoding='utf-8') as f:
            # Use pandas for easier async CSV writing
            df = pd.DataFrame(data, columns=headers)
            csv_content = df.to_csv(index=False)
            await f.write(csv_content)

    except Exception as e:
        raise Exception(f"Failed to write CSV file {file_path}: {str(e)}")

async def write_dataframe_csv(df: pd.DataFrame, file_path: Path) -> None:
    """Write a DataFrame to CSV asynchronously; NaN is written as NA"""
    try:
        async with aiofiles.open(file_path, 'w', newline='', encoding='utf-8') as f:
            await f.write(df.to_csv(index=False, na_rep='NA'))
    except Exception as e:
        raise Exception(f"Failed to write CSV file {file_path}: {str(e)}")
