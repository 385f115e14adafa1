"""
Call History Verification Script

Checks an exported call history workbook after a simulation.
Run from project root: python scripts/verify.py <establishment_id>
"""

import argparse
import os
import sys
from datetime import datetime

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pandas as pd

from tablecall.services.excel_manager import ExcelManager


def verify_call_history(establishment_id: str) -> bool:
    """Verify the exported workbook of one establishment."""
    excel_file = ExcelManager.history_file(establishment_id)

    print("=" * 60)
    print("🔍 CALL HISTORY VERIFICATION REPORT")
    print("=" * 60)
    print(f"⏰ Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"📄 File: {excel_file}")
    print("=" * 60)

    if not excel_file.exists():
        print("\n❌ Excel file not found!")
        print("   Run the simulation with --export first: python scripts/simulate.py --export")
        return False

    try:
        df = pd.read_excel(excel_file, engine='openpyxl', dtype={'call_id': str, 'table_number': str})
        print(f"\n✅ File loaded successfully!")
    except Exception as e:
        print(f"\n❌ Could not read Excel file: {e}")
        return False

    print(f"\n📊 STATISTICS:")
    print(f"   Total Calls: {len(df)}")

    missing = [col for col in ExcelManager.CALL_COLUMNS if col not in df.columns]
    if missing:
        print(f"\n⚠️ Missing Columns: {missing}")
    else:
        print(f"\n✅ All required columns present")

    if 'call_id' in df.columns:
        duplicates = df['call_id'].duplicated().sum()
        if duplicates > 0:
            print(f"\n⚠️ {duplicates} duplicate call IDs found!")
        else:
            print(f"✅ No duplicate call IDs")

    if 'status' in df.columns and 'type' in df.columns:
        print(f"\n🛎️ CALLS BY STATUS:")
        print(df.groupby(['type', 'status']).size().unstack(fill_value=0).to_string())

    print(f"\n📋 RECENT CALLS:")
    print("-" * 60)
    if len(df) > 0:
        cols = [c for c in ['table_number', 'type', 'status', 'created_at'] if c in df.columns]
        print(df[cols].tail(5).to_string(index=False))

    print("\n" + "=" * 60)
    print("✅ VERIFICATION COMPLETE")
    print("=" * 60)

    return True


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Verify an exported call history")
    parser.add_argument("establishment_id", help="Establishment whose export to check")
    args = parser.parse_args()
    sys.exit(0 if verify_call_history(args.establishment_id) else 1)
