"""Stock Service — フラッシュセール向け在庫引き当て・キャッシュ協調サービス"""
