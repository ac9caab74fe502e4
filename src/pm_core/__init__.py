# Polymarket CLOB 向けの共通コア（設定・取引所アダプタ・ロガー）
