from setuptools import setup, find_packages

setup(
    name="cdn-dashboard",
    version="0.1.0",
    packages=find_packages(exclude=['tests', 'tests.*']),
    install_requires=[
        'aiohttp>=3.9.0',  # Provider API calls and the HTTP API
        'python-dotenv>=1.0.0',
        'PyYAML>=6.0',  # zones.yml account descriptor
        'prettytable>=3.0.0',  # For formatted table output
        'concurrent-log-handler>=0.9.20',  # For better logging with concurrency
    ],
    extras_require={
        'test': [
            'pytest>=7.0.0',
            'pytest-asyncio>=0.23.0',
            'pytest-aiohttp>=1.0.5',
        ],
    },
    entry_points={
        'console_scripts': [
            'cdn-dashboard=cdn_dashboard.main:main',
        ],
    },
    python_requires='>=3.9',
    description="Multi-provider CDN analytics dashboard backend for Cloudflare and Tencent EdgeOne",
    long_description=open('README.md').read(),
    long_description_content_type="text/markdown",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: System Administrators",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Internet :: WWW/HTTP",
        "Topic :: System :: Monitoring",
    ],
)
