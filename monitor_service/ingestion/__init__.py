"""Ingesta de datos de sensores.

Estructura modular:
- validators.py: schema del payload y saneo de timestamps
- readings.py: SensorReading y su repositorio
- processor.py: pasos de un job (registro, validación, persistencia, alertas)
- queue.py: implementaciones encolada e inline
- retry.py, rate_limiter.py, dead_letter.py: resiliencia
"""
