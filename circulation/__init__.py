"""Kütüphane Dolaşımı - Çekirdek Paket

Bu paket dolaşım çekirdeğinin modüllerini içerir:
- Oturum durum makinesi (session.py)
- Ödünç / iade servisi (reservations.py)
- Sorgu önbelleği (query_cache.py)
- Değişiklik akışı (realtime.py)
- Yerel depo ve kimlik doğrulama (database.py, auth.py)
- Bakım CLI'ı (cli.py)
"""
