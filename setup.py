from setuptools import setup, find_packages

setup(
    name="quantum-chat-core",
    version="0.2.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    include_package_data=True,
    python_requires=">=3.9",
    install_requires=[
        "flask",
        "flask-socketio",
        "flask-cors",
        "python-socketio[client]",
        "quantcrypt",
        "cryptography",
        "eventlet",
        "gunicorn",
        "bcrypt",
        "python-dotenv",
    ],
    extras_require={
        "test": [
            "pytest",
        ],
    },
)
