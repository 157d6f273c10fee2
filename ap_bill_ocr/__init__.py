"""
AP請求書OCRワーカー
書類フォルダの請求書をOCR・抽出し、金額を照合してOdooに仕入請求書を1回だけ起票する
"""

__version__ = "1.0.0"
