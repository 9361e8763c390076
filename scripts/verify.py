"""
Excel Verification Script

Verifies the integrity of the exported summary workbook.
Run from project root: python scripts/verify.py

Version: 1.0.0
"""

import os
import sys
from datetime import datetime

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pandas as pd

from weekly_orders.services.excel_manager import ExcelManager


def verify_excel():
    """Verify the summary workbook after an export."""
    path = ExcelManager.summary_file()

    print("=" * 60)
    print("🔍 EXCEL VERIFICATION REPORT")
    print("=" * 60)
    print(f"⏰ Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"📄 File: {path}")
    print("=" * 60)

    if not path.exists():
        print("\n❌ Excel file not found!")
        print("   Export a summary first: POST /api/summary/generate?export=true")
        return False

    rows = ExcelManager.read_summary(path)
    df = pd.DataFrame(rows, columns=ExcelManager.SUMMARY_COLUMNS)
    print(f"\n✅ File loaded successfully!")

    print(f"\n📊 STATISTICS:")
    print(f"   Count rows: {len(df)}")
    print(f"   Weeks: {df['week_start'].nunique()}")

    ok = True

    # One row per (week, day, option)
    duplicates = df.duplicated(subset=["week_start", "day", "option"]).sum()
    if duplicates > 0:
        ok = False
        print(f"\n⚠️ {duplicates} duplicate week/day/option rows found!")
    else:
        print(f"✅ No duplicate week/day/option rows")

    # Zero counts are never exported
    non_positive = (df["count"] <= 0).sum() if len(df) else 0
    if non_positive:
        ok = False
        print(f"⚠️ {non_positive} rows with a non-positive count")
    else:
        print(f"✅ All counts positive")

    if len(df):
        print(f"\n🍽️ PORTIONS PER WEEK:")
        for week, total in df.groupby("week_start")["count"].sum().items():
            print(f"   {week}: {total}")

        print(f"\n📋 LATEST ROWS:")
        print("-" * 60)
        print(df[["week_start", "day", "option", "count"]].tail(5).to_string(index=False))

    print("\n" + "=" * 60)
    print("✅ VERIFICATION COMPLETE" if ok else "❌ VERIFICATION FAILED")
    print("=" * 60)

    return ok


if __name__ == "__main__":
    sys.exit(0 if verify_excel() else 1)
