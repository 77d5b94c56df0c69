"""
WhatsApp Integration для EsferaZap

- providers/ - адаптеры бэкендов (Baileys, Evolution API, Meta Business, Twilio)
- qr.py - рендеринг кодов сопряжения в PNG data URL
"""
